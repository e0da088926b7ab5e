from cirelay.providers.base import CIProvider, LogChunkHandler
from cirelay.providers.registry import ProviderRegistry, build_registry

__all__ = ["CIProvider", "LogChunkHandler", "ProviderRegistry", "build_registry"]

"""Provider registry keyed by provider name."""

from __future__ import annotations

import importlib
import logging
from typing import Any

from cirelay.config import AppConfig, has_unresolved_env
from cirelay.errors import ConfigurationError, UnknownProviderError
from cirelay.providers.base import CIProvider
from cirelay.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

# Mapping of provider type -> "module:Class" for built-in providers.  This
# avoids importing every provider at module load time.
_BUILTIN_PROVIDERS: dict[str, str] = {
    "jenkins": "cirelay.providers.jenkins:JenkinsProvider",
    "circleci": "cirelay.providers.circleci:CircleCIProvider",
}


def _import_provider(dotted_path: str) -> type:
    """Import a provider class from a dotted path like 'module.path:ClassName'."""
    module_path, class_name = dotted_path.rsplit(":", 1)
    module = importlib.import_module(module_path)
    return getattr(module, class_name)


class ProviderRegistry:
    """Holds validated provider instances by name.

    Usage::

        registry = ProviderRegistry()
        registry.register(JenkinsProvider, {"url": "...", ...})
        provider = registry.require("jenkins")

    The registry is written during startup and only read afterwards.
    """

    def __init__(self) -> None:
        self._providers: dict[str, CIProvider] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, provider_cls: type, config: dict[str, Any] | None = None, **kwargs: Any) -> CIProvider:
        """Construct, validate and store a provider under its declared name.

        Re-registering a name replaces the previous entry.  Raises
        :class:`ConfigurationError` if construction or validation fails;
        nothing is stored in that case.
        """
        try:
            provider = provider_cls(config or {}, **kwargs)
            provider.validate_config()
        except ConfigurationError:
            logger.error("Failed to register provider %s: invalid configuration", provider_cls.__name__)
            raise
        except (TypeError, ValueError) as exc:
            logger.error("Failed to register provider %s: %s", provider_cls.__name__, exc)
            raise ConfigurationError(f"Failed to register provider {provider_cls.__name__}: {exc}") from exc

        if not isinstance(provider, CIProvider):
            raise ConfigurationError(
                f"{provider_cls.__name__} does not implement the CI provider contract"
            )

        if provider.name in self._providers:
            logger.info("Overriding provider %s with %s", provider.name, provider_cls.__name__)
        self._providers[provider.name] = provider
        logger.info("Registered CI/CD provider: %s", provider.name)
        return provider

    def register_builtin(self, type_name: str, config: dict[str, Any] | None = None, **kwargs: Any) -> CIProvider:
        """Register one of the built-in providers by type name."""
        dotted = _BUILTIN_PROVIDERS.get(type_name)
        if dotted is None:
            raise ConfigurationError(
                f"Unknown provider type '{type_name}'. Available: {sorted(_BUILTIN_PROVIDERS)}"
            )
        return self.register(_import_provider(dotted), config, **kwargs)

    def unregister(self, name: str) -> bool:
        removed = self._providers.pop(name, None) is not None
        if removed:
            logger.info("Unregistered provider: %s", name)
        return removed

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, name: str) -> CIProvider | None:
        return self._providers.get(name)

    def require(self, name: str) -> CIProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise UnknownProviderError(name, self.names())
        return provider

    def has(self, name: str) -> bool:
        return name in self._providers

    def names(self) -> list[str]:
        return list(self._providers)

    def providers(self) -> list[CIProvider]:
        return list(self._providers.values())

    def webhook_routes(self) -> list[tuple[str, CIProvider]]:
        return [(provider.webhook_path, provider) for provider in self._providers.values()]

    async def cleanup(self) -> None:
        """Cleanup all providers on shutdown."""
        for name, provider in self._providers.items():
            try:
                await provider.cleanup()
            except Exception as e:
                logger.error("Error cleaning up provider [%s]: %s", name, e)


def build_registry(config: AppConfig) -> ProviderRegistry:
    """Create a registry from the ``providers`` section of *config*.

    A provider with invalid configuration is skipped; the others still
    register.
    """
    registry = ProviderRegistry()
    retry = RetryPolicy.from_config(config.http_retry)
    for name, entry in config.providers.items():
        if not entry.enabled:
            logger.info("Provider [%s] disabled, skipping", name)
            continue
        if has_unresolved_env(entry.config):
            logger.info("Provider [%s] has unresolved environment variables, skipping", name)
            continue
        try:
            registry.register_builtin(entry.type, entry.config, retry=retry)
        except ConfigurationError as e:
            logger.error("Failed to register provider [%s]: %s", name, e)

    logger.info("Registered providers: %s", ", ".join(registry.names()) or "none")
    return registry

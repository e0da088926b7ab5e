from cirelay.models.build import (
    BuildInfo,
    BuildStatus,
    BuildStatusInfo,
    NormalizedBuildData,
    StageInfo,
)
from cirelay.models.schemas import ActionMessage

__all__ = [
    "ActionMessage",
    "BuildInfo",
    "BuildStatus",
    "BuildStatusInfo",
    "NormalizedBuildData",
    "StageInfo",
]

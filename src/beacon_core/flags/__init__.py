"""Feature flags - local evaluation with remote fallback."""

from .models import (
    FlagDefinition,
    FlagCondition,
    FlagDecision,
    FlagSource,
    PropertyFilter,
    PropertyGroup,
    parse_flag_definitions,
)
from .hashing import bucket
from .evaluator import FlagEvaluator, LocalEvaluation
from .poller import FlagDefinitionPoller
from .remote import RemoteFlagsClient, RemoteFlags
from .manager import FeatureFlags

__all__ = [
    "FlagDefinition",
    "FlagCondition",
    "FlagDecision",
    "FlagSource",
    "PropertyFilter",
    "PropertyGroup",
    "parse_flag_definitions",
    "bucket",
    "FlagEvaluator",
    "LocalEvaluation",
    "FlagDefinitionPoller",
    "RemoteFlagsClient",
    "RemoteFlags",
    "FeatureFlags",
]

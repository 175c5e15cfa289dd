"""featureflag_engine library."""

from .batch import BatchEvaluator
from .bucketing import BUCKET_COUNT, bucket, in_rollout, is_subject_included
from .cache import CacheStats, EvaluationCache
from .client import FeatureFlagClientProtocol
from .conditions import AttributeConditionMatcher, ConditionMatcher
from .config import (
    CacheSection,
    EngineConfig,
    EvaluationSection,
    LogSection,
    RegistrySection,
    load_config,
)
from .context import build_context, context_from_identity
from .dependencies import DependencyResolution, DependencyResolver
from .engine import FeatureFlagEngine
from .evaluator import Evaluator
from .exceptions import FeatureFlagError, FeatureFlagErrorCodes
from .http_client import HttpFlagRegistry
from .logger import configure_logging, new_logger
from .memory import InMemoryFlagRegistry
from .models import (
    DependencyType,
    EvaluationContext,
    EvaluationReason,
    EvaluationResult,
    FeatureFlag,
    FlagChangeSet,
    FlagDependency,
    FlagStatus,
    FlagType,
    FlagValue,
    FlagValueType,
    Segment,
)
from .registry import FlagRegistry
from .watcher import RegistryChangeWatcher

__all__ = [
    "AttributeConditionMatcher",
    "BUCKET_COUNT",
    "BatchEvaluator",
    "CacheSection",
    "CacheStats",
    "ConditionMatcher",
    "DependencyResolution",
    "DependencyResolver",
    "DependencyType",
    "EngineConfig",
    "EvaluationCache",
    "EvaluationContext",
    "EvaluationReason",
    "EvaluationResult",
    "EvaluationSection",
    "Evaluator",
    "FeatureFlag",
    "FeatureFlagClientProtocol",
    "FeatureFlagEngine",
    "FeatureFlagError",
    "FeatureFlagErrorCodes",
    "FlagChangeSet",
    "FlagDependency",
    "FlagRegistry",
    "FlagStatus",
    "FlagType",
    "FlagValue",
    "FlagValueType",
    "HttpFlagRegistry",
    "InMemoryFlagRegistry",
    "LogSection",
    "RegistryChangeWatcher",
    "RegistrySection",
    "Segment",
    "bucket",
    "build_context",
    "configure_logging",
    "context_from_identity",
    "in_rollout",
    "is_subject_included",
    "load_config",
    "new_logger",
]

"""k1s0 featureflag client library."""

from .caching import (
    CachingStoreWrapper,
    DataStoreCacheConfig,
    InMemoryPersistentStore,
    PersistentBacking,
    PersistentDataStore,
    StaleValuesPolicy,
)
from .client import FeatureFlagClient
from .config import Config, EventsSection, HttpSection, load_config
from .data_source import DataSource, NullDataSource
from .diagnostics import DiagnosticAccumulator, DiagnosticId
from .evaluator import EvalResult, Evaluator
from .event_processor import DefaultEventProcessor, EventProcessor, NullEventProcessor
from .event_sender import EventSender, EventSenderResult, HttpEventSender
from .events import CustomEvent, EventFactory, FeatureRequestEvent, IdentifyEvent, IndexEvent
from .exceptions import FeatureFlagClientError, FeatureFlagClientErrorCodes
from .file_data import FileDataSource
from .flags_state import FeatureFlagsState
from .logger import new_logger
from .models import (
    Clause,
    FeatureFlag,
    Operator,
    Prerequisite,
    Rollout,
    Rule,
    Segment,
    SegmentRule,
    Target,
    VariationOrRollout,
    WeightedVariation,
)
from .polling import PollingDataSource
from .reason import ErrorKind, EvaluationDetail, EvaluationReason, ReasonKind
from .requestor import HttpFeatureRequestor
from .store import FEATURES, SEGMENTS, DataKind, DataStore, InMemoryDataStore, sort_all_data
from .streaming import StreamingDataSource
from .user import User
from .value import FlagValue, ValueType

__all__ = [
    "FEATURES",
    "SEGMENTS",
    "CachingStoreWrapper",
    "Clause",
    "Config",
    "CustomEvent",
    "DataKind",
    "DataSource",
    "DataStore",
    "DataStoreCacheConfig",
    "DefaultEventProcessor",
    "DiagnosticAccumulator",
    "DiagnosticId",
    "ErrorKind",
    "EvalResult",
    "EvaluationDetail",
    "EvaluationReason",
    "Evaluator",
    "EventFactory",
    "EventProcessor",
    "EventSender",
    "EventSenderResult",
    "EventsSection",
    "FeatureFlag",
    "FeatureFlagClient",
    "FeatureFlagClientError",
    "FeatureFlagClientErrorCodes",
    "FeatureFlagsState",
    "FeatureRequestEvent",
    "FileDataSource",
    "FlagValue",
    "HttpEventSender",
    "HttpFeatureRequestor",
    "HttpSection",
    "IdentifyEvent",
    "InMemoryDataStore",
    "InMemoryPersistentStore",
    "IndexEvent",
    "NullDataSource",
    "NullEventProcessor",
    "Operator",
    "PersistentBacking",
    "PersistentDataStore",
    "PollingDataSource",
    "Prerequisite",
    "ReasonKind",
    "Rollout",
    "Rule",
    "Segment",
    "SegmentRule",
    "StaleValuesPolicy",
    "StreamingDataSource",
    "Target",
    "User",
    "ValueType",
    "VariationOrRollout",
    "WeightedVariation",
    "load_config",
    "new_logger",
    "sort_all_data",
]

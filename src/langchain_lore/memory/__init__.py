"""
Hierarchical conversation memory.

Turns a long-running conversation into compact summary records and composes
a budgeted memory block from them for future generation requests:

- Summarization: single turns or paired exchanges, summarized through a
  LangChain chat model with retries and a fallback generation mode
- Records: annotations (importance, topics, tone, ...) parsed from the
  summary, core memories flagged, invalidated when source turns change
- Tiers: immediate, short-term, medium-term, long-term and permanent, by
  dynamic importance (recency decay, reinforcement, context relevance) and age
- Injection: permanent/long-term/medium-term sections plus optional
  cross-session facts and semantic hits, never exceeding the budget
"""

from .annotations import Annotations, AnnotationParser, RegexAnnotationParser
from .composer import InjectionComposer
from .config import MemoryConfig
from .core_memory import is_core_memory, strip_marker
from .engine import MemoryEngine
from .errors import (
    MemoryEngineError,
    RecordValidationError,
    StuckStateError,
    TransientProviderError,
)
from .pairing import PairingController, PairingOutcome, SummaryUnit
from .provider import ChatModelProvider, CompletionProvider, create_chat_model
from .records import ContextHints, MemoryRecord, MemoryTier, MemoryType
from .retriever import LocalVectorIndex, PgVectorProvider, SemanticRetriever, VectorSearchProvider
from .retry import RetryPolicy, RetryState, RetryStateMachine
from .scheduler import AsyncioScheduler
from .store import InMemoryBackend, JsonFileBackend, MemoryStore, PostgresBackend
from .summarizer import Summarizer
from .summary_queue import SummarizationQueue
from .tiers import TierClassifier, TierSet
from .token_budget import InjectionBudget, calculate_injection_budget, estimate_tokens
from .weighting import CurrentContext, ImportanceWeighter, ReinforcementKind

__all__ = [
    "Annotations",
    "AnnotationParser",
    "AsyncioScheduler",
    "ChatModelProvider",
    "CompletionProvider",
    "ContextHints",
    "CurrentContext",
    "ImportanceWeighter",
    "InMemoryBackend",
    "InjectionBudget",
    "InjectionComposer",
    "JsonFileBackend",
    "LocalVectorIndex",
    "MemoryConfig",
    "MemoryEngine",
    "MemoryEngineError",
    "MemoryRecord",
    "MemoryStore",
    "MemoryTier",
    "MemoryType",
    "PairingController",
    "PairingOutcome",
    "PgVectorProvider",
    "PostgresBackend",
    "RecordValidationError",
    "RegexAnnotationParser",
    "ReinforcementKind",
    "RetryPolicy",
    "RetryState",
    "RetryStateMachine",
    "SemanticRetriever",
    "StuckStateError",
    "SummarizationQueue",
    "Summarizer",
    "SummaryUnit",
    "TierClassifier",
    "TierSet",
    "TransientProviderError",
    "VectorSearchProvider",
    "calculate_injection_budget",
    "create_chat_model",
    "estimate_tokens",
    "is_core_memory",
    "strip_marker",
]

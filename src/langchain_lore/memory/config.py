"""
Memory configuration and model context window mappings.
"""

import os
from dataclasses import dataclass, field

# Model → context window size (tokens)
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    # Anthropic
    "claude-sonnet-4-5-20250929": 200_000,
    "claude-sonnet-4-20250514": 200_000,
    "claude-opus-4-20250514": 200_000,
    "claude-3-5-sonnet": 200_000,
    "claude-3-haiku": 200_000,
    # OpenAI compatible
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4-turbo": 128_000,
    # DeepSeek
    "deepseek-chat": 64_000,
    "deepseek-reasoner": 64_000,
}

DEFAULT_CONTEXT_WINDOW = 128_000


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes")


def _env_floats(name: str, default: tuple[float, ...]) -> tuple[float, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(float(part) for part in raw.split(",") if part.strip())


@dataclass
class MemoryConfig:
    """Configuration for the hierarchical memory engine."""

    # Summarization
    enable_summarization: bool = True
    auto_summarize: bool = True
    summary_model: str = ""  # empty = reuse the main model
    summary_max_length: int = 150  # tokens per summary
    prefill: str = ""
    include_time_location: bool = True
    include_npcs: bool = True
    include_events: bool = True
    include_dialogue: bool = False

    # Pairing
    enable_pairing: bool = True
    link_to_non_user: bool = True

    # Core memories
    enable_core_memories: bool = True
    core_memory_start_count: int = 20

    # Windows
    immediate_window: int = 10  # raw turns held in full
    running_memory_size: int = 50  # legacy exclusion cutoff

    # Injection
    use_tiered_injection: bool = True
    injection_budget_chars: int = 0  # 0 = derive from context window
    injection_ratio: float = 0.10
    context_window: int = 0  # 0 = auto-detect from model name

    # Cross-session facts
    enable_cross_session: bool = False
    cross_session_max_age_days: float = 30.0

    # Semantic retrieval
    enable_vectorization: bool = False
    vector_search_limit: int = 3
    vector_similarity_threshold: float = 0.7
    embedding_model: str = ""

    # Retention and backlog
    retained_conversations: int = 50
    bulk_threshold: int = 10
    bulk_chunk_size: int = 20

    # Queue timing (seconds)
    max_attempts: int = 3
    retry_backoff: tuple[float, ...] = field(default=(1.0, 2.0, 5.0))
    inter_item_delay: float = 0.1
    enqueue_delay: float = 0.1
    blocked_retry_delay: float = 2.0
    watchdog_interval: float = 300.0
    maintenance_interval: float = 3600.0

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        """Load configuration from environment variables."""
        return cls(
            enable_summarization=_env_bool("MEMORY_ENABLE_SUMMARIZATION", True),
            auto_summarize=_env_bool("MEMORY_AUTO_SUMMARIZE", True),
            summary_model=os.getenv("MEMORY_SUMMARY_MODEL", ""),
            summary_max_length=int(os.getenv("MEMORY_SUMMARY_MAX_LENGTH", "150")),
            prefill=os.getenv("MEMORY_PREFILL", ""),
            include_time_location=_env_bool("MEMORY_INCLUDE_TIME_LOCATION", True),
            include_npcs=_env_bool("MEMORY_INCLUDE_NPCS", True),
            include_events=_env_bool("MEMORY_INCLUDE_EVENTS", True),
            include_dialogue=_env_bool("MEMORY_INCLUDE_DIALOGUE", False),
            enable_pairing=_env_bool("MEMORY_ENABLE_PAIRING", True),
            link_to_non_user=_env_bool("MEMORY_LINK_TO_NON_USER", True),
            enable_core_memories=_env_bool("MEMORY_ENABLE_CORE_MEMORIES", True),
            core_memory_start_count=int(
                os.getenv("MEMORY_CORE_MEMORY_START_COUNT", "20")
            ),
            immediate_window=int(os.getenv("MEMORY_IMMEDIATE_WINDOW", "10")),
            running_memory_size=int(os.getenv("MEMORY_RUNNING_MEMORY_SIZE", "50")),
            use_tiered_injection=_env_bool("MEMORY_TIERED_INJECTION", True),
            injection_budget_chars=int(os.getenv("MEMORY_INJECTION_BUDGET", "0")),
            injection_ratio=float(os.getenv("MEMORY_INJECTION_RATIO", "0.10")),
            context_window=int(os.getenv("MEMORY_CONTEXT_WINDOW", "0")),
            enable_cross_session=_env_bool("MEMORY_ENABLE_CROSS_SESSION", False),
            cross_session_max_age_days=float(
                os.getenv("MEMORY_CROSS_SESSION_MAX_AGE_DAYS", "30")
            ),
            enable_vectorization=_env_bool("MEMORY_ENABLE_VECTORIZATION", False),
            vector_search_limit=int(os.getenv("MEMORY_VECTOR_SEARCH_LIMIT", "3")),
            vector_similarity_threshold=float(
                os.getenv("MEMORY_VECTOR_SIMILARITY_THRESHOLD", "0.7")
            ),
            embedding_model=os.getenv("MEMORY_EMBEDDING_MODEL", ""),
            retained_conversations=int(
                os.getenv("MEMORY_RETAINED_CONVERSATIONS", "50")
            ),
            bulk_threshold=int(os.getenv("MEMORY_BULK_THRESHOLD", "10")),
            bulk_chunk_size=int(os.getenv("MEMORY_BULK_CHUNK_SIZE", "20")),
            max_attempts=int(os.getenv("MEMORY_MAX_ATTEMPTS", "3")),
            retry_backoff=_env_floats("MEMORY_RETRY_BACKOFF", (1.0, 2.0, 5.0)),
            watchdog_interval=float(os.getenv("MEMORY_WATCHDOG_INTERVAL", "300")),
            maintenance_interval=float(
                os.getenv("MEMORY_MAINTENANCE_INTERVAL", "3600")
            ),
        )

    def get_context_window(self, model_name: str) -> int:
        """Resolve context window size from config or model name."""
        if self.context_window > 0:
            return self.context_window
        # Try exact match first, then prefix match
        if model_name in MODEL_CONTEXT_WINDOWS:
            return MODEL_CONTEXT_WINDOWS[model_name]
        for key, size in MODEL_CONTEXT_WINDOWS.items():
            if model_name and (model_name.startswith(key) or key.startswith(model_name)):
                return size
        return DEFAULT_CONTEXT_WINDOW

"""
Budget calculator for memory injection.

Estimates token counts for text and turns the configured context window into
a character budget for the composed memory block, split into the gates the
composer checks before each section.
"""

from dataclasses import dataclass

from .config import MemoryConfig

CHARS_PER_TOKEN = 3

# Fractions of the total budget
CROSS_SESSION_RESERVE = 0.20
LONG_TERM_GATE = 0.80
MEDIUM_TERM_GATE = 0.90


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~3 chars per token for mixed CJK/English."""
    if not text:
        return 0
    return max(1, len(text) // CHARS_PER_TOKEN)


def tokens_to_chars(tokens: int) -> int:
    return max(tokens, 0) * CHARS_PER_TOKEN


@dataclass
class InjectionBudget:
    """Character budgets for one composed injection."""

    total: int
    cross_session_max: int  # reserved share for facts from other conversations
    long_term_gate: int  # long-term section only while used < this
    medium_term_gate: int  # medium-term section only while used < this

    @classmethod
    def for_total(cls, total: int) -> "InjectionBudget":
        total = max(int(total), 0)
        return cls(
            total=total,
            cross_session_max=int(total * CROSS_SESSION_RESERVE),
            long_term_gate=int(total * LONG_TERM_GATE),
            medium_term_gate=int(total * MEDIUM_TERM_GATE),
        )


def calculate_injection_budget(config: MemoryConfig, model_name: str = "") -> InjectionBudget:
    """
    Calculate the character budget for the memory block.

    An explicit ``injection_budget_chars`` wins; otherwise the budget is
    ``context_window * injection_ratio`` tokens converted to characters.
    """
    if config.injection_budget_chars > 0:
        return InjectionBudget.for_total(config.injection_budget_chars)

    context_window = config.get_context_window(model_name)
    tokens = int(context_window * config.injection_ratio)
    return InjectionBudget.for_total(tokens_to_chars(tokens))

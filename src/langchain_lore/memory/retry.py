"""
Retry/fallback state machine for completion calls.

    ATTEMPT --ok--> SUCCEEDED
    ATTEMPT --fail, attempts left--> RETRY --backoff--> ATTEMPT
    ATTEMPT --fail, last attempt--> FALLBACK_ATTEMPT
    FALLBACK_ATTEMPT --ok--> SUCCEEDED
    FALLBACK_ATTEMPT --fail--> FAILED

An exception or an empty/whitespace response counts as a failure. Each
failure waits the next backoff delay before the following call. FAILED
resolves to ``None``; nothing is raised to the caller.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from .errors import TransientProviderError

logger = logging.getLogger(__name__)

Generate = Callable[[], Awaitable[str]]
Sleep = Callable[[float], Awaitable[None]]


class RetryState(str, Enum):
    ATTEMPT = "attempt"
    RETRY = "retry"
    FALLBACK_ATTEMPT = "fallback_attempt"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TRANSITIONS: dict[RetryState, set[RetryState]] = {
    RetryState.ATTEMPT: {RetryState.SUCCEEDED, RetryState.RETRY, RetryState.FALLBACK_ATTEMPT, RetryState.FAILED},
    RetryState.RETRY: {RetryState.ATTEMPT},
    RetryState.FALLBACK_ATTEMPT: {RetryState.SUCCEEDED, RetryState.FAILED},
    RetryState.SUCCEEDED: set(),
    RetryState.FAILED: set(),
}


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff: tuple[float, ...] = (1.0, 2.0, 5.0)

    def delay(self, failures: int) -> float:
        """Delay after the ``failures``-th failure (1-based)."""
        if not self.backoff:
            return 0.0
        return self.backoff[min(failures, len(self.backoff)) - 1]


@dataclass
class RetryOutcome:
    text: Optional[str]
    state: RetryState
    attempts: int
    used_fallback: bool = False
    errors: list[TransientProviderError] = field(default_factory=list)


class RetryStateMachine:
    """Runs one completion through the retry/fallback transitions."""

    def __init__(self, policy: RetryPolicy, sleep: Sleep, label: str = ""):
        self.policy = policy
        self._sleep = sleep
        self.label = label
        self.state = RetryState.ATTEMPT
        self.history: list[RetryState] = [RetryState.ATTEMPT]

    def _move(self, new_state: RetryState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal retry transition {self.state} -> {new_state}")
        self.state = new_state
        self.history.append(new_state)

    async def _call(self, generate: Generate, attempt: int, fallback: bool) -> str:
        try:
            text = await generate()
        except Exception as e:
            raise TransientProviderError(str(e) or type(e).__name__, attempt, fallback) from e
        if not text or not str(text).strip():
            raise TransientProviderError("empty response", attempt, fallback)
        return str(text)

    async def run(self, primary: Generate, fallback: Optional[Generate] = None) -> RetryOutcome:
        errors: list[TransientProviderError] = []
        attempt = 0
        max_attempts = max(1, self.policy.max_attempts)

        while self.state in (RetryState.ATTEMPT, RetryState.RETRY):
            if self.state is RetryState.RETRY:
                await self._sleep(self.policy.delay(len(errors)))
                self._move(RetryState.ATTEMPT)

            attempt += 1
            try:
                text = await self._call(primary, attempt, fallback=False)
            except TransientProviderError as e:
                errors.append(e)
                logger.warning(
                    "Completion attempt %d/%d failed%s: %s",
                    attempt, max_attempts, f" ({self.label})" if self.label else "", e,
                )
                if attempt < max_attempts:
                    self._move(RetryState.RETRY)
                elif fallback is not None:
                    self._move(RetryState.FALLBACK_ATTEMPT)
                else:
                    self._move(RetryState.FAILED)
                continue

            self._move(RetryState.SUCCEEDED)
            return RetryOutcome(text, self.state, attempt, errors=errors)

        if self.state is RetryState.FALLBACK_ATTEMPT:
            await self._sleep(self.policy.delay(len(errors)))
            try:
                text = await self._call(fallback, attempt, fallback=True)
            except TransientProviderError as e:
                errors.append(e)
                logger.warning("Fallback generation failed%s: %s", f" ({self.label})" if self.label else "", e)
                self._move(RetryState.FAILED)
            else:
                self._move(RetryState.SUCCEEDED)
                return RetryOutcome(text, self.state, attempt, used_fallback=True, errors=errors)

        return RetryOutcome(None, self.state, attempt, errors=errors)

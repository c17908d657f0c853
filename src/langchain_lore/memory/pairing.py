"""
Pairing of turns into summarization units.

With pairing on, turn 0 is summarized alone and every later exchange is
summarized as the pair ``{i-1, i}`` once its even-indexed turn arrives. The
resulting record is filed under exactly one of the two indices: the non-user
turn when ``link_to_non_user`` is set, otherwise the user turn.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .turns import TurnRole, get_turn, turn_role, turn_text


class PairingOutcome(str, Enum):
    DEFER = "defer"  # wait for the partner turn
    INVALID = "invalid"  # a source turn is missing or empty


@dataclass(frozen=True)
class SummaryUnit:
    """The turn(s) one summarization call covers and where its record is filed."""

    source_indices: tuple[int, ...]
    target_index: int

    @property
    def is_paired(self) -> bool:
        return len(self.source_indices) > 1


Resolution = Union[SummaryUnit, PairingOutcome]


class PairingController:
    def __init__(self, enabled: bool = True, link_to_non_user: bool = True):
        self.enabled = enabled
        self.link_to_non_user = link_to_non_user

    def resolve(self, index: int, turns: list) -> Resolution:
        """Decide the unit that covers turn ``index``."""
        if index < 0 or index >= len(turns):
            return PairingOutcome.INVALID

        if not self.enabled or index == 0:
            unit = SummaryUnit((index,), index)
        elif index % 2 == 1:
            return PairingOutcome.DEFER
        else:
            unit = SummaryUnit((index - 1, index), self._pick_target(index - 1, index, turns))

        for i in unit.source_indices:
            if not turn_text(get_turn(turns, i)).strip():
                return PairingOutcome.INVALID
        return unit

    def unit_for(self, index: int, turns: list) -> Optional[SummaryUnit]:
        """
        The unit ``index`` belongs to, whether or not it is complete yet.

        Unlike ``resolve``, an odd index maps to its pair with ``index + 1``.
        Returns None when that pair is not complete.
        """
        if self.enabled and index % 2 == 1:
            index += 1
        resolution = self.resolve(index, turns)
        return resolution if isinstance(resolution, SummaryUnit) else None

    def partner(self, index: int) -> Optional[int]:
        """The other source index of ``index``'s pair, if pairing applies."""
        if not self.enabled or index <= 0:
            return None
        return index + 1 if index % 2 == 1 else index - 1

    def is_summarized(self, index: int, store) -> bool:
        """True if ``index`` owns a record, or its pair partner owns one covering it."""
        if store.has(index):
            return True
        partner = self.partner(index)
        if partner is None:
            return False
        record = store.get(partner)
        return bool(record and index in record.source_indices(partner))

    def _pick_target(self, first: int, second: int, turns: list) -> int:
        wanted = TurnRole.NON_USER if self.link_to_non_user else TurnRole.USER
        matches = [i for i in (first, second) if turn_role(get_turn(turns, i)) is wanted]
        if len(matches) == 1:
            return matches[0]
        # neither or both: file under the later turn
        return second

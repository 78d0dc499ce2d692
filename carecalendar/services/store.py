"""
Storage protocol shared by the in-memory and SQL adapters.

The correctness boundary for slot updates is ``transition``: an atomic
"apply these changes only if status and version are still what I read"
write. Services never read-modify-write a slot without it.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Collection, Dict, List, Optional, Protocol, Sequence

from pendulum import DateTime

from ..domain.models import AvailabilityRule, Slot, SlotStatus


class SchedulingStore(Protocol):
    """Persistence needed by the scheduling services."""

    def add_rule(self, rule: AvailabilityRule) -> None:
        """Insert a new rule."""

    def save_rule(self, rule: AvailabilityRule) -> None:
        """Replace an existing rule."""

    def get_rule(self, rule_id: str) -> Optional[AvailabilityRule]:
        """Return the rule or None."""

    def list_rules(
        self,
        provider_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[AvailabilityRule]:
        """Return rules ordered by start date then start time."""

    def delete_rule(self, rule_id: str) -> int:
        """Delete a rule and all its slots; return the number of slots removed."""

    def add_slots(self, slots: Sequence[Slot]) -> List[Slot]:
        """
        Insert slots, skipping any whose (provider, date, start time) is
        already held by a non-cancelled slot. Returns the inserted slots.
        """

    def get_slot(self, slot_id: str) -> Optional[Slot]:
        """Return the slot or None."""

    def list_slots(
        self,
        provider_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        statuses: Optional[Collection[SlotStatus]] = None,
        rule_id: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> List[Slot]:
        """Return matching slots ordered by date then start time."""

    def transition(
        self,
        slot_id: str,
        expected_status: SlotStatus,
        expected_version: int,
        changes: Dict[str, Any],
    ) -> Optional[Slot]:
        """
        Atomically apply ``changes`` if the slot still has the expected status
        and version. Returns the updated slot, or None if the guard failed.
        Raises SlotUnavailable when the change would take a cancelled slot's
        key back while another live slot holds it.
        """

    def delete_slots(self, slot_ids: Sequence[str], expected_status: SlotStatus) -> int:
        """Delete the given slots that are still in ``expected_status``."""

    def purge_cancelled_before(self, cutoff: DateTime) -> int:
        """Delete cancelled slots whose cancellation predates ``cutoff``."""

"""
Facts emitted for notification and audit collaborators.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pendulum import DateTime

from .models import Slot


class EventType(str, Enum):
    SLOT_BOOKED = "SlotBooked"
    SLOT_CONFIRMED = "SlotConfirmed"
    SLOT_CANCELLED = "SlotCancelled"
    SLOT_COMPLETED = "SlotCompleted"
    SLOT_NO_SHOW = "SlotNoShow"
    REMINDER_DUE = "ReminderDue"


@dataclass(frozen=True)
class SlotEvent:
    type: EventType
    slot_id: str
    provider_id: str
    patient_id: Optional[str]
    timestamp: DateTime

    @classmethod
    def for_slot(
        cls,
        event_type: EventType,
        slot: Slot,
        timestamp: DateTime,
        patient_id: Optional[str] = None,
    ) -> "SlotEvent":
        return cls(
            type=event_type,
            slot_id=slot.id,
            provider_id=slot.provider_id,
            patient_id=patient_id if patient_id is not None else slot.patient_id,
            timestamp=timestamp,
        )

    def as_dict(self) -> dict:
        return {
            "type": self.type.value,
            "slotId": self.slot_id,
            "providerId": self.provider_id,
            "patientId": self.patient_id,
            "timestamp": self.timestamp.to_iso8601_string(),
        }

"""
Service layer - Orchestrates storage and domain logic.
"""

from .availability_manager import AvailabilityManager
from .booking_coordinator import BookingCoordinator
from .materializer import SlotMaterializer
from .scheduling import SchedulingService, build_service
from .slot_state_machine import SlotStateMachine
from .store import SchedulingStore

__all__ = [
    "AvailabilityManager",
    "BookingCoordinator",
    "SchedulingService",
    "SchedulingStore",
    "SlotMaterializer",
    "SlotStateMachine",
    "build_service",
]

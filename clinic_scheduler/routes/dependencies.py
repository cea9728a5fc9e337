from fastapi import Depends, Request
from sqlalchemy.orm import Session

from clinic_scheduler.database import get_db
from clinic_scheduler.services.availability_service import AvailabilityService
from clinic_scheduler.services.booking_service import BookingService
from clinic_scheduler.services.connection_registry import ConnectionRegistry
from clinic_scheduler.services.lifecycle_service import LifecycleService
from clinic_scheduler.services.locks import KeyedLock
from clinic_scheduler.services.notification_dispatcher import NotificationDispatcher
from clinic_scheduler.services.slot_service import SlotService


def get_connection_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.connection_registry


def get_scheduling_locks(request: Request) -> KeyedLock:
    return request.app.state.scheduling_locks


def get_dispatcher(
    db: Session = Depends(get_db),
    registry: ConnectionRegistry = Depends(get_connection_registry),
) -> NotificationDispatcher:
    return NotificationDispatcher(db=db, registry=registry)


def get_availability_service(db: Session = Depends(get_db)) -> AvailabilityService:
    return AvailabilityService(db=db)


def get_slot_service(db: Session = Depends(get_db)) -> SlotService:
    return SlotService(db=db)


def get_booking_service(
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    locks: KeyedLock = Depends(get_scheduling_locks),
) -> BookingService:
    return BookingService(db=db, dispatcher=dispatcher, locks=locks)


def get_lifecycle_service(
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    locks: KeyedLock = Depends(get_scheduling_locks),
) -> LifecycleService:
    return LifecycleService(db=db, dispatcher=dispatcher, locks=locks)

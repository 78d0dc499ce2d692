"""
SQLAlchemy scheduling store.

Rules and slots live in two tables. Slot keys (provider, date, start time)
are protected by a partial unique index that ignores cancelled rows, and
every slot state change is a single conditional UPDATE on (status, version).
Timestamps are stored as naive UTC.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Collection, Dict, Iterator, List, Optional, Sequence, assert_never

import pendulum
from pendulum import DateTime
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime as SqlDateTime,
    Index,
    Integer,
    String,
    Text,
    Time,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ..domain.exceptions import SchedulingError, SlotUnavailable, StorageError
from ..domain.models import (
    AppointmentKind,
    AvailabilityRule,
    Custom,
    Daily,
    LocationKind,
    OneTime,
    Recurrence,
    RecurrenceKind,
    Slot,
    SlotStatus,
    Weekly,
)

logger = logging.getLogger(__name__)

# Seconds a SQLite connection waits for the write lock.
SQLITE_BUSY_TIMEOUT = 30

Base = declarative_base()


class RuleRow(Base):
    __tablename__ = "availability_rules"

    id = Column(String(36), primary_key=True)
    provider_id = Column(String(64), nullable=False, index=True)
    title = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    recurrence_kind = Column(String(16), nullable=False)
    day_of_week = Column(Integer, nullable=True)  # ISO weekday, WEEKLY only
    custom_dates = Column(Text, nullable=False, default="[]")  # JSON list of ISO dates
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    slot_duration_minutes = Column(Integer, nullable=False)
    buffer_minutes = Column(Integer, nullable=False, default=0)
    time_zone = Column(String(64), nullable=False)
    location_kind = Column(String(16), nullable=False)
    location_details = Column(String(200), nullable=True)
    appointment_kind = Column(String(32), nullable=False)
    max_advance_booking_days = Column(Integer, nullable=False)
    min_advance_booking_hours = Column(Integer, nullable=False)
    allow_online_booking = Column(Boolean, nullable=False, default=True)
    requires_approval = Column(Boolean, nullable=False, default=False)
    excluded_dates = Column(Text, nullable=False, default="[]")  # JSON list of ISO dates
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(SqlDateTime, nullable=True)
    updated_at = Column(SqlDateTime, nullable=True)


class SlotRow(Base):
    __tablename__ = "slots"
    __table_args__ = (
        Index(
            "uq_slots_provider_date_start_open",
            "provider_id",
            "slot_date",
            "start_time",
            unique=True,
            sqlite_where=text("status != 'CANCELLED'"),
            postgresql_where=text("status != 'CANCELLED'"),
        ),
        Index("ix_slots_provider_date", "provider_id", "slot_date"),
    )

    id = Column(String(36), primary_key=True)
    rule_id = Column(String(36), nullable=False, index=True)
    provider_id = Column(String(64), nullable=False)
    slot_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    status = Column(String(32), nullable=False, default=SlotStatus.AVAILABLE.value, index=True)
    is_available = Column(Boolean, nullable=False, default=True)  # denormalized from status/disabled
    patient_id = Column(String(64), nullable=True, index=True)
    requested_at = Column(SqlDateTime, nullable=True)
    confirmed_at = Column(SqlDateTime, nullable=True)
    cancelled_at = Column(SqlDateTime, nullable=True)
    completed_at = Column(SqlDateTime, nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    cancelled_by_provider = Column(Boolean, nullable=False, default=False)
    checked_in = Column(Boolean, nullable=False, default=False)
    checked_in_at = Column(SqlDateTime, nullable=True)
    no_show = Column(Boolean, nullable=False, default=False)
    reminder_sent = Column(Boolean, nullable=False, default=False)
    reminder_sent_at = Column(SqlDateTime, nullable=True)
    provider_notes = Column(Text, nullable=True)
    actual_duration_minutes = Column(Integer, nullable=True)
    disabled = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(SqlDateTime, nullable=True)


# Slot dataclass fields whose column has a different name.
_SLOT_COLUMNS = {"date": "slot_date"}
_SLOT_TIMESTAMPS = frozenset(
    {"requested_at", "confirmed_at", "cancelled_at", "completed_at", "checked_in_at", "reminder_sent_at", "created_at"}
)


def _to_utc(value: Optional[DateTime]) -> Optional[datetime]:
    if value is None:
        return None
    return pendulum.instance(value).in_timezone("UTC").naive()


def _from_utc(value: Optional[datetime]) -> Optional[DateTime]:
    if value is None:
        return None
    return pendulum.instance(value, tz="UTC")


def _dump_dates(values: Collection[date]) -> str:
    return json.dumps(sorted(d.isoformat() for d in values))


def _load_dates(raw: Optional[str]) -> List[date]:
    return [date.fromisoformat(item) for item in json.loads(raw or "[]")]


def _recurrence_from_row(row: RuleRow) -> Recurrence:
    match RecurrenceKind(row.recurrence_kind):
        case RecurrenceKind.ONE_TIME:
            return OneTime()
        case RecurrenceKind.DAILY:
            return Daily()
        case RecurrenceKind.WEEKLY:
            return Weekly(day_of_week=row.day_of_week)
        case RecurrenceKind.CUSTOM:
            return Custom(dates=tuple(_load_dates(row.custom_dates)))
        case unknown:
            assert_never(unknown)


def _rule_values(rule: AvailabilityRule) -> Dict[str, Any]:
    custom = rule.recurrence.dates if isinstance(rule.recurrence, Custom) else ()
    return {
        "id": rule.id,
        "provider_id": rule.provider_id,
        "title": rule.title,
        "description": rule.description,
        "recurrence_kind": rule.recurrence_kind.value,
        "day_of_week": rule.day_of_week,
        "custom_dates": _dump_dates(custom),
        "start_date": rule.start_date,
        "end_date": rule.end_date,
        "start_time": rule.start_time,
        "end_time": rule.end_time,
        "slot_duration_minutes": rule.slot_duration_minutes,
        "buffer_minutes": rule.buffer_minutes,
        "time_zone": rule.time_zone,
        "location_kind": rule.location_kind.value,
        "location_details": rule.location_details,
        "appointment_kind": rule.appointment_kind.value,
        "max_advance_booking_days": rule.max_advance_booking_days,
        "min_advance_booking_hours": rule.min_advance_booking_hours,
        "allow_online_booking": rule.allow_online_booking,
        "requires_approval": rule.requires_approval,
        "excluded_dates": _dump_dates(rule.excluded_dates),
        "is_active": rule.is_active,
        "created_at": _to_utc(rule.created_at),
        "updated_at": _to_utc(rule.updated_at),
    }


def _rule_from_row(row: RuleRow) -> AvailabilityRule:
    return AvailabilityRule(
        id=row.id,
        provider_id=row.provider_id,
        title=row.title,
        description=row.description,
        recurrence=_recurrence_from_row(row),
        start_date=row.start_date,
        end_date=row.end_date,
        start_time=row.start_time,
        end_time=row.end_time,
        slot_duration_minutes=row.slot_duration_minutes,
        buffer_minutes=row.buffer_minutes,
        time_zone=row.time_zone,
        location_kind=LocationKind(row.location_kind),
        location_details=row.location_details,
        appointment_kind=AppointmentKind(row.appointment_kind),
        max_advance_booking_days=row.max_advance_booking_days,
        min_advance_booking_hours=row.min_advance_booking_hours,
        allow_online_booking=row.allow_online_booking,
        requires_approval=row.requires_approval,
        excluded_dates=frozenset(_load_dates(row.excluded_dates)),
        is_active=row.is_active,
        created_at=_from_utc(row.created_at),
        updated_at=_from_utc(row.updated_at),
    )


def _slot_column_values(values: Dict[str, Any]) -> Dict[str, Any]:
    """Translate Slot field values to column values."""
    columns: Dict[str, Any] = {}
    for name, value in values.items():
        if name in _SLOT_TIMESTAMPS:
            value = _to_utc(value)
        elif name == "status":
            value = SlotStatus(value).value
        columns[_SLOT_COLUMNS.get(name, name)] = value
    return columns


def _slot_values(slot: Slot) -> Dict[str, Any]:
    values = {name: getattr(slot, name) for name in slot.__dataclass_fields__}
    columns = _slot_column_values(values)
    columns["is_available"] = slot.is_available
    return columns


def _slot_from_row(row: SlotRow) -> Slot:
    return Slot(
        id=row.id,
        rule_id=row.rule_id,
        provider_id=row.provider_id,
        date=row.slot_date,
        start_time=row.start_time,
        end_time=row.end_time,
        status=SlotStatus(row.status),
        patient_id=row.patient_id,
        requested_at=_from_utc(row.requested_at),
        confirmed_at=_from_utc(row.confirmed_at),
        cancelled_at=_from_utc(row.cancelled_at),
        completed_at=_from_utc(row.completed_at),
        cancellation_reason=row.cancellation_reason,
        cancelled_by_provider=row.cancelled_by_provider,
        checked_in=row.checked_in,
        checked_in_at=_from_utc(row.checked_in_at),
        no_show=row.no_show,
        reminder_sent=row.reminder_sent,
        reminder_sent_at=_from_utc(row.reminder_sent_at),
        provider_notes=row.provider_notes,
        actual_duration_minutes=row.actual_duration_minutes,
        disabled=row.disabled,
        version=row.version,
        created_at=_from_utc(row.created_at),
    )


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let SQLAlchemy, not pysqlite, emit BEGIN so SAVEPOINT works.

    Transactions start with BEGIN IMMEDIATE: the write lock is taken up
    front and waits on the busy timeout, so two writers never deadlock
    upgrading a shared lock.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class SqlSchedulingStore:
    """Relational implementation of ``SchedulingStore``."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    @classmethod
    def from_url(cls, database_url: str, create_schema: bool = True) -> "SqlSchedulingStore":
        if database_url.startswith("sqlite"):
            engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            )
            _enable_sqlite_savepoints(engine)
        else:
            engine = create_engine(database_url, pool_pre_ping=True, pool_recycle=300)
        store = cls(engine)
        if create_schema:
            store.create_schema()
        return store

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SchedulingError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Database operation failed: %s", exc)
            raise StorageError(f"Database error: {exc}") from exc
        finally:
            session.close()

    # Rules

    def add_rule(self, rule: AvailabilityRule) -> None:
        with self._session() as session:
            session.add(RuleRow(**_rule_values(rule)))

    def save_rule(self, rule: AvailabilityRule) -> None:
        with self._session() as session:
            row = session.get(RuleRow, rule.id)
            if row is None:
                raise StorageError(f"Rule {rule.id} does not exist")
            for name, value in _rule_values(rule).items():
                setattr(row, name, value)

    def get_rule(self, rule_id: str) -> Optional[AvailabilityRule]:
        with self._session() as session:
            row = session.get(RuleRow, rule_id)
            return _rule_from_row(row) if row is not None else None

    def list_rules(
        self,
        provider_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[AvailabilityRule]:
        with self._session() as session:
            query = session.query(RuleRow)
            if provider_id is not None:
                query = query.filter(RuleRow.provider_id == provider_id)
            if active_only:
                query = query.filter(RuleRow.is_active.is_(True))
            rows = query.order_by(RuleRow.start_date, RuleRow.start_time, RuleRow.id).all()
            return [_rule_from_row(row) for row in rows]

    def delete_rule(self, rule_id: str) -> int:
        with self._session() as session:
            removed = (
                session.query(SlotRow)
                .filter(SlotRow.rule_id == rule_id)
                .delete(synchronize_session=False)
            )
            session.query(RuleRow).filter(RuleRow.id == rule_id).delete(synchronize_session=False)
            return removed

    # Slots

    def add_slots(self, slots: Sequence[Slot]) -> List[Slot]:
        if not slots:
            return []
        inserted: List[Slot] = []
        with self._session() as session:
            taken = self._open_keys(session, slots)
            for slot in slots:
                if (slot.provider_id, slot.date, slot.start_time) in taken:
                    continue
                try:
                    # A concurrent writer may claim the key after the read above.
                    with session.begin_nested():
                        session.add(SlotRow(**_slot_values(slot)))
                except IntegrityError:
                    logger.debug("Slot key %s already held; skipping", slot.key)
                    continue
                inserted.append(slot)
        return inserted

    def _open_keys(self, session: Session, slots: Sequence[Slot]) -> set:
        providers = {slot.provider_id for slot in slots}
        first = min(slot.date for slot in slots)
        last = max(slot.date for slot in slots)
        rows = (
            session.query(SlotRow.provider_id, SlotRow.slot_date, SlotRow.start_time)
            .filter(
                SlotRow.provider_id.in_(providers),
                SlotRow.slot_date >= first,
                SlotRow.slot_date <= last,
                SlotRow.status != SlotStatus.CANCELLED.value,
            )
            .all()
        )
        return {(row.provider_id, row.slot_date, row.start_time) for row in rows}

    def get_slot(self, slot_id: str) -> Optional[Slot]:
        with self._session() as session:
            row = session.get(SlotRow, slot_id)
            return _slot_from_row(row) if row is not None else None

    def list_slots(
        self,
        provider_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        statuses: Optional[Collection[SlotStatus]] = None,
        rule_id: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> List[Slot]:
        with self._session() as session:
            query = session.query(SlotRow)
            if provider_id is not None:
                query = query.filter(SlotRow.provider_id == provider_id)
            if date_from is not None:
                query = query.filter(SlotRow.slot_date >= date_from)
            if date_to is not None:
                query = query.filter(SlotRow.slot_date <= date_to)
            if statuses is not None:
                query = query.filter(SlotRow.status.in_([SlotStatus(s).value for s in statuses]))
            if rule_id is not None:
                query = query.filter(SlotRow.rule_id == rule_id)
            if patient_id is not None:
                query = query.filter(SlotRow.patient_id == patient_id)
            rows = query.order_by(SlotRow.slot_date, SlotRow.start_time, SlotRow.provider_id).all()
            return [_slot_from_row(row) for row in rows]

    def transition(
        self,
        slot_id: str,
        expected_status: SlotStatus,
        expected_version: int,
        changes: Dict[str, Any],
    ) -> Optional[Slot]:
        unknown = set(changes) - set(Slot.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown slot fields: {sorted(unknown)}")

        values = _slot_column_values(changes)
        values["version"] = expected_version + 1
        with self._session() as session:
            # The conditional UPDATE is the first statement, so the row is
            # only read back once this caller has won it.
            try:
                count = (
                    session.query(SlotRow)
                    .filter(
                        SlotRow.id == slot_id,
                        SlotRow.status == expected_status.value,
                        SlotRow.version == expected_version,
                    )
                    .update(values, synchronize_session=False)
                )
            except IntegrityError as exc:
                raise SlotUnavailable(f"Slot {slot_id} time is held by another slot") from exc
            if count == 0:
                return None

            row = session.get(SlotRow, slot_id)
            current = _slot_from_row(row)
            row.is_available = current.is_available
            return current

    def delete_slots(self, slot_ids: Sequence[str], expected_status: SlotStatus) -> int:
        if not slot_ids:
            return 0
        with self._session() as session:
            return (
                session.query(SlotRow)
                .filter(SlotRow.id.in_(list(slot_ids)), SlotRow.status == expected_status.value)
                .delete(synchronize_session=False)
            )

    def purge_cancelled_before(self, cutoff: DateTime) -> int:
        with self._session() as session:
            return (
                session.query(SlotRow)
                .filter(
                    SlotRow.status == SlotStatus.CANCELLED.value,
                    SlotRow.cancelled_at.isnot(None),
                    SlotRow.cancelled_at < _to_utc(cutoff),
                )
                .delete(synchronize_session=False)
            )

from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from clinic_scheduler.core import config


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(config.DATABASE_URL, connect_args=_connect_args(config.DATABASE_URL))

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_scheduling_schema_checked = False


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    # Registers every table on Base before create_all.
    from clinic_scheduler.models import appointment, availability, notification, time_slot, user  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def ensure_scheduling_schema(bind=None) -> None:
    """Add indexes that databases created by older releases are missing."""
    global _scheduling_schema_checked

    if _scheduling_schema_checked:
        return

    with _schema_lock:
        if _scheduling_schema_checked:
            return

        target = bind or engine
        inspector = inspect(target)
        table_names = set(inspector.get_table_names())

        statements = []
        if 'appointments' in table_names:
            statements.append(
                "CREATE UNIQUE INDEX IF NOT EXISTS uq_appointments_doctor_active_instant "
                "ON appointments(doctor_id, appointment_at) WHERE status != 'CANCELED'"
            )
            statements.append(
                'CREATE INDEX IF NOT EXISTS idx_appointments_patient_instant ON appointments(patient_id, appointment_at)'
            )
        if 'time_slots' in table_names:
            statements.append(
                'CREATE INDEX IF NOT EXISTS idx_time_slots_doctor_date_status ON time_slots(doctor_id, slot_date, status)'
            )
        if 'notifications' in table_names:
            statements.append(
                'CREATE INDEX IF NOT EXISTS idx_notifications_user_read ON notifications(user_id, is_read)'
            )

        with target.begin() as connection:
            for statement in statements:
                connection.execute(text(statement))

        _scheduling_schema_checked = True

"""Lookups against the user directory and the ownership checks built on them."""

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_scheduler.auth.dependencies import Principal
from clinic_scheduler.core.errors import Forbidden, NotFound, Unavailable
from clinic_scheduler.models.user import ROLE_DOCTOR, ROLE_PATIENT, User

DATABASE_UNAVAILABLE = 'Database unavailable. Verify DATABASE_URL and database credentials.'


def require_user(db: Session, user_id: int, role: str) -> User:
    try:
        user = db.get(User, user_id)
    except SQLAlchemyError as exc:
        raise Unavailable(DATABASE_UNAVAILABLE) from exc

    if user is None or user.role != role:
        raise NotFound(f'{role.capitalize()} not found.')
    return user


def require_doctor(db: Session, doctor_id: int) -> User:
    return require_user(db, doctor_id, ROLE_DOCTOR)


def require_patient(db: Session, patient_id: int) -> User:
    return require_user(db, patient_id, ROLE_PATIENT)


def require_doctor_access(principal: Principal, doctor_id: int) -> None:
    if principal.is_admin:
        return
    if not (principal.is_doctor and principal.user_id == doctor_id):
        raise Forbidden('Only the doctor who owns this schedule can change it.')

"""User model definitions."""

from sqlalchemy import Column, Integer, String
from clinic_scheduler.database import Base


ROLE_PATIENT = "patient"
ROLE_DOCTOR = "doctor"
ROLE_ADMIN = "admin"


class User(Base):
    """Directory entry for patients, doctors and admins."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    name = Column(String)
    role = Column(String)  # patient/doctor/admin

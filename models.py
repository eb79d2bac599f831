from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String

from database import Base


OTP_TABLE_NAME = "OTP"

# Server-internal table: no operation is open to clients.
OTP_TABLE_PERMISSIONS = {
    "get": {},
    "find": {},
    "create": {},
    "update": {},
    "delete": {},
    "addField": {},
}


class Otp(Base):
    __tablename__ = OTP_TABLE_NAME
    __table_args__ = {"info": {"permissions": OTP_TABLE_PERMISSIONS}}

    id = Column(Integer, primary_key=True)

    # Not unique: readers always take the newest row for an email.
    email = Column(String, nullable=False, index=True)
    otp = Column(String, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)

    # Bumped on every write; conditional updates/deletes match on it.
    version = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

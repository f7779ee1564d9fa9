"""Audit trail of batch attendance saves. One row per save attempt, success or not."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, Date, DateTime, Integer, String, Text

from portal.db.session import Base


class AttendanceSaveLog(Base):
    __tablename__ = "attendance_save_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    class_id = Column(String(140), nullable=False, index=True)
    attendance_date = Column(Date, nullable=False)
    period = Column(String(140), nullable=False)
    item_count = Column(Integer, nullable=False)
    overwrite = Column(Boolean, nullable=False, default=True)
    success = Column(Boolean, nullable=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

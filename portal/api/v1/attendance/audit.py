"""
Audit logging for batch attendance saves. One row per attempt, success or failure.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portal.core.models import AttendanceSaveLog

from .schemas import SaveResult, SessionKey

logger = logging.getLogger(__name__)


class SaveAuditLog:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def record(self, key: SessionKey, result: SaveResult, overwrite: bool) -> Optional[AttendanceSaveLog]:
        """Append and commit one entry. A storage error is logged, never raised."""
        entry = AttendanceSaveLog(
            class_id=key.class_id,
            attendance_date=key.date,
            period=key.period,
            item_count=result.item_count,
            overwrite=overwrite,
            success=result.success,
            error=result.error,
            created_at=datetime.utcnow(),
        )
        try:
            async with self._session_factory() as db:
                db.add(entry)
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Could not record save audit for %s: %s", key.label(), e)
            return None
        return entry


async def list_save_logs(db: AsyncSession, class_id: str, limit: int = 20):
    result = await db.execute(
        select(AttendanceSaveLog)
        .where(AttendanceSaveLog.class_id == class_id)
        .order_by(AttendanceSaveLog.created_at.desc())
        .limit(limit)
    )
    return result.scalars().all()

"""Attendance session API router."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from portal.auth.dependencies import get_erp_client
from portal.core.exceptions import ServiceError
from portal.db.session import get_db
from portal.erp.client import ErpClient

from .audit import SaveAuditLog, list_save_logs
from .schemas import (
    SaveLogRecord,
    SaveResult,
    SessionKey,
    SessionOpenRequest,
    SessionViewResponse,
    StatusUpdateRequest,
)
from .service import AttendanceSession, BatchSaveCoordinator, SessionRegistry, SessionViewModelBuilder

router = APIRouter(prefix="/api/v1/attendance", tags=["attendance"])


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def get_save_audit(request: Request) -> SaveAuditLog:
    return SaveAuditLog(request.app.state.db_sessionmaker)


def _render(session: AttendanceSession, search: Optional[str] = None) -> SessionViewResponse:
    students = session.view(search)
    return SessionViewResponse(
        session_id=session.id,
        class_id=session.key.class_id,
        class_title=session.snapshot.class_title,
        date=session.key.date,
        period=session.key.period,
        total=len(session.snapshot.roster),
        visible=len(students),
        has_unsaved_changes=session.has_unsaved_changes,
        students=students,
    )


@router.post("/sessions", response_model=SessionViewResponse, status_code=status.HTTP_201_CREATED)
async def open_session(
    payload: SessionOpenRequest,
    erp: ErpClient = Depends(get_erp_client),
    registry: SessionRegistry = Depends(get_registry),
):
    """Open an attendance screen for (class, date, period) and load its roster and signals."""
    try:
        key = SessionKey(class_id=payload.class_id, date=payload.date, period=payload.period)
        session = await registry.open(key, SessionViewModelBuilder(erp))
        return _render(session)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/sessions/{session_id}", response_model=SessionViewResponse)
async def get_session(
    session_id: str,
    search: Optional[str] = Query(None, description="Filter by student name or code"),
    registry: SessionRegistry = Depends(get_registry),
):
    """Name-ordered view; `search` narrows the display only."""
    try:
        return _render(registry.get(session_id), search)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/sessions/{session_id}/refresh", response_model=SessionViewResponse)
async def refresh_session(
    session_id: str,
    refetch_roster: bool = Query(False),
    search: Optional[str] = Query(None),
    erp: ErpClient = Depends(get_erp_client),
    registry: SessionRegistry = Depends(get_registry),
):
    """Replace every signal map (and the roster when asked). Discards local edits."""
    try:
        session = registry.get(session_id)
        await session.refresh(SessionViewModelBuilder(erp), refetch_roster=refetch_roster)
        return _render(session, search)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.put("/sessions/{session_id}/key", response_model=SessionViewResponse)
async def change_session_key(
    session_id: str,
    payload: SessionOpenRequest,
    erp: ErpClient = Depends(get_erp_client),
    registry: SessionRegistry = Depends(get_registry),
):
    """Point the session at another (class, date, period); all cached data is dropped."""
    try:
        session = registry.get(session_id)
        session.change_key(SessionKey(class_id=payload.class_id, date=payload.date, period=payload.period))
        await session.refresh(SessionViewModelBuilder(erp), refetch_roster=True)
        return _render(session)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.put("/sessions/{session_id}/students/{student_id}", response_model=SessionViewResponse)
async def set_student_status(
    session_id: str,
    student_id: str,
    payload: StatusUpdateRequest,
    search: Optional[str] = Query(None),
    registry: SessionRegistry = Depends(get_registry),
):
    """Local manual edit. Rejected (409) when it contradicts an event or leave override."""
    try:
        session = registry.get(session_id)
        session.set_status(student_id, payload.status)
        return _render(session, search)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/sessions/{session_id}/save", response_model=SaveResult)
async def save_session(
    session_id: str,
    erp: ErpClient = Depends(get_erp_client),
    registry: SessionRegistry = Depends(get_registry),
    audit: SaveAuditLog = Depends(get_save_audit),
):
    """Save every roster student, regardless of any active search filter."""
    try:
        session = registry.get(session_id)
        result = await session.save(BatchSaveCoordinator(erp, audit))
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if not result.success:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=result.error or "Save failed")
    return result


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def close_session(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        registry.close(session_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/classes/{class_id}/save-logs", response_model=List[SaveLogRecord])
async def get_save_logs(
    class_id: str,
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """Most recent save attempts for a class, newest first."""
    return await list_save_logs(db, class_id, limit)

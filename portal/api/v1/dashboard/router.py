"""Teacher dashboard API router."""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from portal.api.v1.attendance.service import SessionViewModelBuilder
from portal.auth.dependencies import get_erp_client
from portal.core.exceptions import ServiceError
from portal.erp.client import ErpClient

from . import service
from .schemas import DashboardResponse

router = APIRouter(prefix="/api/v1/dashboard", tags=["dashboard"])


@router.get("/classes", response_model=DashboardResponse)
async def get_dashboard_classes(
    teacher_user_id: str = Query(...),
    day: date = Query(..., alias="date", description="Dashboard date"),
    education_stage: Optional[str] = Query(None),
    teacher_id: Optional[str] = Query(None, description="Timetable teacher id, when it differs from the user id"),
    erp: ErpClient = Depends(get_erp_client),
):
    """All of the teacher's classes for the day with check-in/attendance/check-out counts."""
    try:
        classes = await service.list_teacher_classes(erp, teacher_user_id, day, education_stage, teacher_id)
        aggregator = service.DashboardAggregator(SessionViewModelBuilder(erp))
        entries = await aggregator.aggregate(classes, day)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return DashboardResponse(date=day, teacher_user_id=teacher_user_id, classes=entries)

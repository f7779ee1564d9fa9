"""
Thin async client for the school ERP (Frappe-style `/api/method/...` endpoints).

Every call returns the unwrapped payload (``message.data``, falling back to ``data``)
or raises ErpRequestError. Deciding whether a failure is fatal is left to callers.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

import httpx

from portal.core.exceptions import ErpRequestError, ErpResponseError

logger = logging.getLogger(__name__)

_SIS = "/api/method/erp.api.erp_sis"
_MISSING = object()


def _unwrap(body: Any, default: Any = _MISSING) -> Any:
    if isinstance(body, dict):
        message = body.get("message")
        if isinstance(message, dict) and message.get("data") is not None:
            return message["data"]
        if body.get("data") is not None:
            return body["data"]
    if default is _MISSING:
        raise ErpResponseError("Invalid response format")
    return default


def _expect(value: Any, kind: type, what: str) -> Any:
    if not isinstance(value, kind):
        raise ErpResponseError(f"Unexpected {what} payload: {type(value).__name__}")
    return value


class ErpClient:
    """ERP operations used by the attendance engine, bound to one caller's credentials."""

    def __init__(self, http: httpx.AsyncClient, authorization: Optional[str] = None) -> None:
        self._http = http
        self._headers = {"Content-Type": "application/json"}
        if authorization:
            self._headers["Authorization"] = authorization

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._http.request(method, path, headers=self._headers, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("ERP %s %s failed: %r", method, path, e)
            raise ErpRequestError(f"ERP request failed: {e!r}")
        if response.is_error:
            logger.warning("ERP %s %s returned %s", method, path, response.status_code)
            raise ErpRequestError(f"ERP returned {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError:
            raise ErpResponseError(f"ERP returned a non-JSON body for {path}")

    async def _get(self, path: str, params: Dict[str, Any]) -> Any:
        return await self._request("GET", path, params=params)

    async def _post(self, path: str, body: Dict[str, Any]) -> Any:
        return await self._request("POST", path, json=body)

    # ----- Teacher classes / timetable -----
    async def get_teacher_classes(self, teacher_user_id: str) -> Dict[str, Any]:
        body = await self._get(
            f"{_SIS}.teacher_dashboard.get_teacher_classes_optimized",
            {"teacher_user_id": teacher_user_id},
        )
        return _expect(_unwrap(body), dict, "teacher classes")

    async def get_teacher_week(
        self,
        teacher_id: str,
        week_start: date,
        week_end: date,
        education_stage: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params = {
            "teacher_id": teacher_id,
            "week_start": week_start.isoformat(),
            "week_end": week_end.isoformat(),
        }
        if education_stage:
            params["education_stage"] = education_stage
        data = _unwrap(await self._get(f"{_SIS}.teacher_dashboard.get_teacher_week_optimized", params))
        # Some deployments wrap the list as {"entries": [...]}
        if isinstance(data, dict):
            data = data.get("entries") or []
        return _expect(data, list, "timetable")

    # ----- Class / roster -----
    async def get_class_info(self, class_id: str) -> Dict[str, Any]:
        body = await self._get(f"{_SIS}.sis_class.get_class", {"name": class_id})
        return _expect(_unwrap(body), dict, "class")

    async def get_education_stage(self, grade: str) -> Dict[str, Any]:
        body = await self._get(f"{_SIS}.event_class_attendance.get_education_stage", {"name": grade})
        return _expect(_unwrap(body), dict, "education stage")

    async def get_class_students(self, class_id: str, page: int = 1, limit: int = 1000) -> List[str]:
        body = await self._get(
            f"{_SIS}.class_student.get_all_class_students",
            {"page": page, "limit": limit, "class_id": class_id},
        )
        rows = _unwrap(body, [])
        if isinstance(rows, dict):
            rows = rows.get("data") or []
        rows = _expect(rows, list, "class students")
        return [str(r["student_id"]) for r in rows if isinstance(r, dict) and r.get("student_id")]

    async def batch_get_students(self, student_ids: List[str]) -> List[Dict[str, Any]]:
        body = await self._post(f"{_SIS}.student.batch_get_students", {"student_ids": student_ids})
        return _expect(_unwrap(body, []), list, "students")

    # ----- Attendance signals -----
    async def get_class_attendance(self, class_id: str, att_date: date, period: str) -> List[Dict[str, Any]]:
        body = await self._get(
            f"{_SIS}.attendance.get_class_attendance",
            {"class_id": class_id, "date": att_date.isoformat(), "period": period},
        )
        return _expect(_unwrap(body), list, "class attendance")

    async def get_event_attendance_statuses(
        self, class_id: str, att_date: date, period: str, education_stage_id: str
    ) -> Dict[str, Any]:
        body = await self._get(
            f"{_SIS}.event_class_attendance.get_event_attendance_statuses",
            {
                "class_id": class_id,
                "date": att_date.isoformat(),
                "period": period,
                "education_stage_id": education_stage_id,
            },
        )
        return _expect(_unwrap(body, {}), dict, "event statuses")

    async def get_events_by_class_period(
        self, class_id: str, att_date: date, period: str, education_stage_id: str
    ) -> List[Dict[str, Any]]:
        body = await self._get(
            f"{_SIS}.event_class_attendance.get_events_by_class_period",
            {
                "class_id": class_id,
                "date": att_date.isoformat(),
                "period": period,
                "education_stage_id": education_stage_id,
            },
        )
        return _expect(_unwrap(body, []), list, "events")

    async def get_active_leaves(self, class_id: str, att_date: date) -> Dict[str, Any]:
        body = await self._post(
            f"{_SIS}.leave.batch_get_active_leaves",
            {"class_id": class_id, "date": att_date.isoformat()},
        )
        return _expect(_unwrap(body, {}), dict, "active leaves")

    async def get_students_day_map(self, student_codes: List[str], att_date: date) -> Dict[str, Any]:
        body = await self._post(
            "/api/method/erp.api.attendance.query.get_students_day_map",
            {"date": att_date.isoformat(), "codes": student_codes},
        )
        return _expect(_unwrap(body), dict, "day map")

    # ----- Save -----
    async def save_class_attendance(self, items: List[Dict[str, Any]], overwrite: bool = True) -> Dict[str, Any]:
        """Submit one batch; the ERP replaces the session's records wholesale when overwrite is set."""
        body = await self._post(
            f"{_SIS}.attendance.save_class_attendance",
            {"items": items, "overwrite": overwrite},
        )
        if not isinstance(body, dict) or not (body.get("success") or body.get("message")):
            raise ErpResponseError(f"Save rejected: {body!r}"[:300])
        if body.get("success") is False:
            raise ErpRequestError(str(body.get("message") or "Save failed"))
        return body

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from portal.api.v1.attendance.router import router as attendance_router
from portal.api.v1.attendance.service import SessionRegistry
from portal.api.v1.dashboard.router import router as dashboard_router
from portal.core.config import settings
from portal.core.logging import configure_logging
from portal.db.session import AsyncSessionLocal, init_db


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    app.state.erp_http = httpx.AsyncClient(
        base_url=settings.erp_base_url,
        timeout=settings.erp_timeout_seconds,
    )
    try:
        yield
    finally:
        await app.state.erp_http.aclose()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Staff Portal Attendance", lifespan=lifespan)

    # CORS: the mobile portal and its web preview call this API directly
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.sessions = SessionRegistry()
    app.state.db_sessionmaker = AsyncSessionLocal

    # Routers
    app.include_router(attendance_router)
    app.include_router(dashboard_router)

    return app


app = create_app()

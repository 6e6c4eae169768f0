"CareCall role service"
from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from backend.identity_access.config import load_settings
from backend.web.config import ensure_secure_config_on_startup, load_local_env
from backend.web.routes.roles import roles_router

logger = logging.getLogger("carecall.web")


def create_app() -> FastAPI:
    load_local_env()
    ensure_secure_config_on_startup()
    app = FastAPI(title="CareCall", description="Role lookup for the CareCall dashboard", version="0.1.0")
    app.include_router(roles_router)

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness plus whether backend credentials are present (never their values)."""
        return JSONResponse(
            {"status": "ok", "configured": load_settings().configured},
            headers={"Cache-Control": "no-store"},
        )

    return app


app = create_app()

"""
Role-lookup function: POST {user_id} -> {role}.

Why:
    The session layer asks this endpoint first when resolving a signed-in
    user's role. Browsers call it cross-origin, so every response (including
    errors and the OPTIONS preflight) carries the CORS headers below.

Behavior:
    - 400 `{"error": "user_id is required"}` when the body has no user_id.
    - 500 `{"error": "Configuration error"}` when the backend URL/key is unset.
    - 500 `{"error": "Database query failed"}` when the users query fails.
    - 500 `{"error": "Internal server error"}` for malformed bodies and
      anything unexpected.
    - A user without a row (or without a role) is "staff".

Security:
    Log the user id only at debug level; never log keys or the request body.
"""
from __future__ import annotations

from typing import Optional
import logging

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.functional_validators import field_validator
from supabase import AsyncClient, PostgrestAPIError

from backend.identity_access.config import SupabaseSettings, load_settings
from backend.identity_access.domain import DEFAULT_ROLE
from backend.identity_access.supabase_auth import create_supabase

logger = logging.getLogger("carecall.web.roles")

roles_router = APIRouter(tags=["Roles"])

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, accept, origin, referer, cache-control",
    "Access-Control-Allow-Methods": "POST, GET, OPTIONS, PUT, DELETE",
    "Access-Control-Max-Age": "86400",
    "Access-Control-Allow-Credentials": "true",
}

ROLE_PATHS = ("/fetch-role", "/functions/v1/fetch-role")


class FetchRoleRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: Optional[str] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _text_or_none(cls, v):
        if v is None or v == "":
            return None
        if isinstance(v, (int, str)) and not isinstance(v, bool):
            return str(v).strip() or None
        raise ValueError("user_id must be a string")


def _error(message: str, status: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status, headers=CORS_HEADERS)


def get_settings() -> SupabaseSettings:
    """Settings wrapper; tests monkeypatch this or the environment."""
    return load_settings()


async def supabase_client(settings: SupabaseSettings) -> AsyncClient:
    """SDK client factory (anon key); tests monkeypatch this with an in-memory fake."""
    return await create_supabase(settings)


async def lookup_role(settings: SupabaseSettings, user_id: str) -> str:
    """Query `users.role` for one id with the anon key; missing row -> "staff"."""
    client = await supabase_client(settings)
    result = await client.table("users").select("role").eq("id", user_id).limit(1).execute()
    rows = result.data if isinstance(result.data, list) else []
    role = rows[0].get("role") if rows and isinstance(rows[0], dict) else None
    return role or DEFAULT_ROLE


async def fetch_role_preflight() -> Response:
    return Response(status_code=204, headers=CORS_HEADERS)


async def fetch_role(request: Request) -> JSONResponse:
    try:
        payload = FetchRoleRequest.model_validate(await request.json())
    except (ValueError, ValidationError) as exc:
        logger.warning("fetch-role: malformed body (%s)", type(exc).__name__)
        return _error("Internal server error", 500)
    if not payload.user_id:
        return _error("user_id is required", 400)

    settings = get_settings()
    if not settings.configured:
        logger.error("fetch-role: missing configuration: %s", ", ".join(settings.missing()))
        return _error("Configuration error", 500)

    logger.debug("fetch-role: lookup for %s", payload.user_id)
    try:
        role = await lookup_role(settings, payload.user_id)
    except (PostgrestAPIError, httpx.HTTPError) as exc:
        logger.error("fetch-role: users query failed: %s", type(exc).__name__)
        return _error("Database query failed", 500)
    except Exception as exc:
        logger.error("fetch-role: unexpected error: %s", type(exc).__name__)
        return _error("Internal server error", 500)
    return JSONResponse({"role": role}, headers=CORS_HEADERS)


for _path in ROLE_PATHS:
    roles_router.add_api_route(_path, fetch_role_preflight, methods=["OPTIONS"], include_in_schema=False)
    roles_router.add_api_route(_path, fetch_role, methods=["POST"])


__all__ = ["CORS_HEADERS", "FetchRoleRequest", "ROLE_PATHS", "fetch_role", "lookup_role", "roles_router"]

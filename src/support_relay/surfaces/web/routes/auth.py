from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Optional
from urllib.parse import quote

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from ....core.blocks import is_valid_subject_id
from ....core.errors import AuthStateMismatch, RateLimited, UpstreamFailure
from ....core.logging_utils import log_event
from ....core.sessions import SESSION_COOKIE_NAME, PublicIdentity
from ....identity.gateway import SessionCheck
from ..schemas import (
    BlockStatusResponse,
    ErrorResponse,
    LogoutResponse,
    SessionResponse,
    UserModel,
)

logger = logging.getLogger(__name__)

_CALLBACK_PAGE = """<!doctype html>
<html>
  <body>
    <script>
      if (window.opener) {{
        window.opener.postMessage({{ type: "authSuccess", user: {user} }}, {origin});
      }}
      window.close();
    </script>
  </body>
</html>
"""


def _script_json(value: Any) -> str:
    return json.dumps(value).replace("<", "\\u003c").replace(">", "\\u003e")


def _callback_page(identity: PublicIdentity, origin: str) -> str:
    user = UserModel.from_identity(identity).model_dump()
    return _CALLBACK_PAGE.format(user=_script_json(user), origin=_script_json(origin))


def _error_redirect(reason: str) -> RedirectResponse:
    return RedirectResponse(f"/?error={quote(reason)}", status_code=302)


def _client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _session_cookie(request: Request) -> Optional[str]:
    return request.cookies.get(SESSION_COOKIE_NAME)


def _require_identity(request: Request):
    identity = request.app.state.services.identity
    if identity is None:
        raise HTTPException(status_code=503, detail="Discord sign-in is not configured")
    return identity


def build_auth_routes() -> APIRouter:
    router = APIRouter(prefix="/auth", tags=["auth"])

    @router.get("/discord")
    async def begin_discord_auth(request: Request):
        gateway = _require_identity(request)
        try:
            redirect = await gateway.begin_auth(
                _client_address(request),
                existing_session_id=_session_cookie(request),
            )
        except RateLimited as exc:
            return JSONResponse(
                status_code=429,
                content=ErrorResponse(error=exc.user_message).model_dump(),
            )
        return RedirectResponse(redirect.url, status_code=302)

    @router.get("/discord/callback")
    async def discord_auth_callback(
        request: Request,
        code: Optional[str] = None,
        state: Optional[str] = None,
    ):
        gateway = _require_identity(request)
        config = request.app.state.config
        try:
            result = await gateway.complete_auth(code, state)
        except AuthStateMismatch:
            return _error_redirect("invalid_state")
        except UpstreamFailure as exc:
            return _error_redirect(exc.reason)
        except sqlite3.Error as exc:
            log_event(logger, logging.ERROR, "auth.callback.store_failed", exc=exc)
            return _error_redirect("auth_failed")

        response = HTMLResponse(_callback_page(result.identity, config.server.base_url))
        response.set_cookie(
            SESSION_COOKIE_NAME,
            result.session_id,
            max_age=result.max_age_seconds,
            httponly=True,
            secure=config.server.cookie_secure,
            samesite="strict",
        )
        return response

    @router.get("/session", response_model=SessionResponse)
    async def get_session(request: Request):
        session_id = _session_cookie(request)
        services = request.app.state.services
        if services.identity is not None:
            check = await services.identity.check_session(session_id)
        else:
            record = await services.sessions.get_valid(session_id)
            check = SessionCheck(
                authenticated=record is not None,
                identity=PublicIdentity.from_session(record) if record else None,
            )
        response = JSONResponse(SessionResponse.from_check(check).model_dump())
        if session_id and not check.authenticated and not check.unavailable:
            response.delete_cookie(SESSION_COOKIE_NAME)
        return response

    @router.post("/logout", response_model=LogoutResponse)
    async def logout(request: Request):
        services = request.app.state.services
        session_id = _session_cookie(request)
        if services.identity is not None:
            await services.identity.logout(session_id)
        else:
            await services.sessions.delete(session_id)
        response = JSONResponse(LogoutResponse().model_dump())
        response.delete_cookie(SESSION_COOKIE_NAME)
        return response

    @router.get("/check-block/{subject_id}", response_model=BlockStatusResponse)
    async def check_block(subject_id: str, request: Request):
        if not is_valid_subject_id(subject_id):
            raise HTTPException(status_code=400, detail="invalid subject id")
        status = await request.app.state.services.blocks.is_blocked(subject_id)
        return BlockStatusResponse.from_status(status)

    return router

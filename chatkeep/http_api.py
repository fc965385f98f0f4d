"""
HTTP control API (FastAPI, served by uvicorn).

Every route except ``/health`` requires an ``Authorization`` header carrying
an issued API key (``Bearer <key>`` or the bare key). The key is a
capability check only; tier always comes from the entitlement cache.

Status codes: 401 missing/invalid key, 404 unknown section or resource,
400 body is not a JSON object, 422 domain validation errors.
"""

import json
import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from . import features
from .api import ChatKeeper
from .errors import ChatKeepError
from .facade import (
    GET_ANALYTICS,
    GET_CREDITS,
    GET_LICENSE,
    GET_SETTINGS,
    GET_STATUS,
    LIST_PROFILES,
    UPDATE_SETTINGS,
    Facade,
    FacadeResponse,
)

logger = logging.getLogger(__name__)

SECTIONS = ("welcome", "faq", "timer", "moderation", "giveaway")

_STATUS_BY_KIND = {
    "validation": 422,
    "not_found": 404,
    "protected": 403,
    "limit_exceeded": 409,
    "quota_exhausted": 429,
    "remote_unavailable": 503,
    "vault": 500,
    "unauthorized": 401,
}


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    value = authorization.strip()
    if value.lower().startswith("bearer "):
        value = value[7:].strip()
    return value or None


def _respond(response: FacadeResponse) -> Any:
    if response.ok:
        return response.data
    status = _STATUS_BY_KIND.get(response.error.kind, 400)
    raise HTTPException(status_code=status, detail=response.error.to_dict())


async def _json_object(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail={"kind": "bad_request", "message": "Body must be JSON"})
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail={"kind": "bad_request", "message": "Body must be a JSON object"})
    return body


def create_app(keeper: ChatKeeper) -> FastAPI:
    """Build the API around one ChatKeeper."""
    app = FastAPI(title="chatkeep", version="1.0")
    facade = Facade(keeper)

    def require_api_key(
        request: Request,
        authorization: Optional[str] = Header(default=None),
    ) -> str:
        token = _bearer_token(authorization)
        if token is None:
            raise HTTPException(
                status_code=401,
                detail={"kind": "unauthorized", "message": "Missing API key"},
                headers={"WWW-Authenticate": "Bearer"},
            )
        context = request.client.host if request.client else "default"
        result = keeper.api_keys.validate_key(token, context=context)
        if not result.valid:
            raise HTTPException(
                status_code=401,
                detail={"kind": "unauthorized", "message": result.reason or "Invalid API key"},
                headers={"WWW-Authenticate": "Bearer"},
            )
        return result.key_id

    @app.exception_handler(ChatKeepError)
    async def _domain_error(request: Request, exc: ChatKeepError):
        return JSONResponse(
            status_code=_STATUS_BY_KIND.get(exc.kind, 400),
            content={"detail": {"kind": exc.kind, "message": str(exc)}},
        )

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/status", dependencies=[Depends(require_api_key)])
    def status() -> Any:
        return _respond(facade.handle(GET_STATUS))

    @app.post("/bot/enable", dependencies=[Depends(require_api_key)])
    def bot_enable() -> Any:
        _respond(facade.handle(UPDATE_SETTINGS, features.set_master_enabled(True)))
        return {"masterEnabled": True}

    @app.post("/bot/disable", dependencies=[Depends(require_api_key)])
    def bot_disable() -> Any:
        _respond(facade.handle(UPDATE_SETTINGS, features.set_master_enabled(False)))
        return {"masterEnabled": False}

    @app.get("/settings", dependencies=[Depends(require_api_key)])
    def get_settings() -> Any:
        return _respond(facade.handle(GET_SETTINGS))

    @app.put("/settings", dependencies=[Depends(require_api_key)])
    async def put_settings(request: Request) -> Any:
        body = await _json_object(request)
        return _respond(facade.handle(UPDATE_SETTINGS, body))

    @app.get("/settings/{section}", dependencies=[Depends(require_api_key)])
    def get_section(section: str) -> Any:
        if section not in SECTIONS:
            raise HTTPException(status_code=404, detail={"kind": "not_found", "message": f"Unknown section: {section}"})
        return _respond(facade.handle(GET_SETTINGS))[section]

    @app.put("/settings/{section}", dependencies=[Depends(require_api_key)])
    async def put_section(section: str, request: Request) -> Any:
        if section not in SECTIONS:
            raise HTTPException(status_code=404, detail={"kind": "not_found", "message": f"Unknown section: {section}"})
        body = await _json_object(request)
        return _respond(facade.handle(UPDATE_SETTINGS, {section: body}))[section]

    @app.get("/license", dependencies=[Depends(require_api_key)])
    def get_license() -> Any:
        return _respond(facade.handle(GET_LICENSE))

    @app.get("/credits", dependencies=[Depends(require_api_key)])
    def get_credits() -> Any:
        return _respond(facade.handle(GET_CREDITS))

    @app.get("/analytics", dependencies=[Depends(require_api_key)])
    def get_analytics() -> Any:
        return _respond(facade.handle(GET_ANALYTICS))

    @app.post("/analytics/reset", dependencies=[Depends(require_api_key)])
    def reset_analytics() -> Any:
        return keeper.analytics.reset()

    @app.get("/profiles", dependencies=[Depends(require_api_key)])
    def get_profiles() -> Any:
        return _respond(facade.handle(LIST_PROFILES))

    return app


def serve(keeper: ChatKeeper, host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the API with uvicorn on the configured (loopback) address."""
    import uvicorn

    host = host or keeper.config.http.host
    port = port or keeper.config.http.port
    logger.info("HTTP API listening on %s:%d", host, port)
    uvicorn.run(create_app(keeper), host=host, port=port, log_level="warning")

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header

from gatekeep.api.schemas import (
    Envelope,
    LoginRequest,
    NewPasswordRequest,
    NewVerificationRequest,
    ResetRequest,
    SessionResponse,
    SettingsRequest,
)
from gatekeep.logging import get_logger
from gatekeep.service.errors import UnauthorizedError
from gatekeep.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise UnauthorizedError("Missing session!")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedError("Missing session!")
    return token.strip()


async def get_session_token(authorization: Optional[str] = Header(None)) -> str:
    return _bearer_token(authorization)


async def get_session_claims(token: str = Depends(get_session_token)) -> Dict[str, Any]:
    claims = get_runtime().claims.decode(token)
    if claims is None:
        raise UnauthorizedError("Invalid session!")
    return claims


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    runtime = get_runtime()
    result = await runtime.actions.login(body.model_dump())
    return Envelope(status="ok", data=result.as_dict())


@router.post("/auth/reset", response_model=Envelope, tags=["auth"])
async def reset(body: ResetRequest):
    runtime = get_runtime()
    result = await runtime.actions.reset(body.model_dump())
    return Envelope(status="ok", data=result.as_dict())


@router.post("/auth/new-password", response_model=Envelope, tags=["auth"])
async def new_password(body: NewPasswordRequest):
    runtime = get_runtime()
    result = await runtime.actions.new_password({"password": body.password}, body.token)
    return Envelope(status="ok", data=result.as_dict())


@router.post("/auth/new-verification", response_model=Envelope, tags=["auth"])
async def new_verification(body: NewVerificationRequest):
    runtime = get_runtime()
    result = await runtime.actions.new_verification(body.token)
    return Envelope(status="ok", data=result.as_dict())


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def session(token: str = Depends(get_session_token)):
    """Refresh the session from live user state and return the client view."""
    runtime = get_runtime()
    refreshed = await runtime.claims.refresh(token)
    view = runtime.claims.project(refreshed.claims)
    payload = SessionResponse(session_token=refreshed.token, user=view.as_dict())
    return Envelope(status="ok", data=payload.model_dump())


@router.post("/auth/settings", response_model=Envelope, tags=["auth"])
async def settings(
    body: SettingsRequest, claims: Dict[str, Any] = Depends(get_session_claims)
):
    runtime = get_runtime()
    result = await runtime.actions.update_settings(
        claims.get("sub"), body.model_dump(exclude_unset=True)
    )
    return Envelope(status="ok", data=result.as_dict())

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select

from marketplace.auth import Principal, Role
from marketplace.config import settings
from marketplace.db import SessionLocal
from marketplace.models import User, WebSession


AUTH_EXEMPT_PATHS = {'/auth/login', '/health'}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _session_expiry() -> datetime:
    return _now() + timedelta(minutes=settings.session_ttl_minutes)


def create_web_session(db, user_id: int, ip: str | None, user_agent: str | None) -> str:
    token = secrets.token_urlsafe(48)
    db.add(
        WebSession(
            session_token=token,
            user_id=user_id,
            ip=ip,
            user_agent=user_agent,
            expires_at=_session_expiry(),
        )
    )
    db.flush()
    return token


def revoke_web_session(db, token: str) -> None:
    web_session = db.execute(select(WebSession).where(WebSession.session_token == token)).scalar_one_or_none()
    if not web_session or web_session.revoked_at is not None:
        return
    web_session.revoked_at = _now()


def load_principal_from_token(db, token: str | None) -> Principal | None:
    if not token:
        return None

    row = db.execute(
        select(WebSession, User).join(User, User.id == WebSession.user_id).where(WebSession.session_token == token)
    ).one_or_none()
    if not row:
        return None

    web_session, user = row
    now = _now()
    if web_session.revoked_at is not None or _as_utc(web_session.expires_at) <= now:
        return None

    web_session.last_seen_at = now
    web_session.expires_at = _session_expiry()
    return Principal(
        id=user.id,
        username=user.username,
        role=Role(getattr(user.role, 'value', user.role)),
        active=user.active,
    )


def install_auth_session_middleware(app: FastAPI) -> None:
    if not hasattr(app.state, 'session_factory'):
        app.state.session_factory = SessionLocal

    @app.middleware('http')
    async def auth_session_middleware(request: Request, call_next):
        token = request.cookies.get(settings.session_cookie_name)
        with request.app.state.session_factory() as db:
            request.state.principal = load_principal_from_token(db, token)
            db.commit()

        if request.url.path not in AUTH_EXEMPT_PATHS and request.state.principal is None:
            return JSONResponse({'code': 'UNAUTHENTICATED', 'message': 'Authentication required'}, status_code=401)

        return await call_next(request)

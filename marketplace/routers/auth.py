from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace.auth import Principal, get_current_principal
from marketplace.config import settings
from marketplace.db import get_db
from marketplace.dependencies import get_client_ip
from marketplace.logging_config import get_logger
from marketplace.models import User
from marketplace.schemas import LoginRequest, PrincipalOut
from marketplace.security.passwords import verify_and_upgrade, verify_password
from marketplace.security.sessions import create_web_session, revoke_web_session
from marketplace.services.audit_service import log_audit

router = APIRouter(prefix='/auth', tags=['auth'])
logger = get_logger('routers.auth')


@router.post('/login')
def login(body: LoginRequest, request: Request, db: Session = Depends(get_db)):
    username = body.username.strip()
    ip = get_client_ip(request)
    user_agent = request.headers.get('user-agent')

    user = db.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if user is None or not user.active:
        verify_password(body.password, None)
        failure = 'UNKNOWN_USERNAME' if user is None else 'INACTIVE_USER'
        log_audit(
            db,
            actor_user_id=user.id if user else None,
            action='AUTH_LOGIN_FAILED',
            ip=ip,
            metadata={'username': username, 'reason': failure},
        )
        db.commit()
        logger.info('Login rejected', extra={'username': username, 'reason': failure})
        raise HTTPException(status_code=401, detail='Invalid username or password')

    valid, upgraded_hash = verify_and_upgrade(body.password, user.password_hash)
    if not valid:
        log_audit(
            db,
            actor_user_id=user.id,
            action='AUTH_LOGIN_FAILED',
            ip=ip,
            metadata={'username': username, 'reason': 'BAD_PASSWORD'},
        )
        db.commit()
        logger.info('Login rejected', extra={'username': username, 'reason': 'BAD_PASSWORD'})
        raise HTTPException(status_code=401, detail='Invalid username or password')
    if upgraded_hash:
        user.password_hash = upgraded_hash

    token = create_web_session(db, user.id, ip=ip, user_agent=user_agent)
    log_audit(db, actor_user_id=user.id, action='AUTH_LOGIN', ip=ip, metadata={'username': username})
    db.commit()

    response = JSONResponse(PrincipalOut.model_validate(user).model_dump(mode='json'))
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite=settings.session_cookie_samesite,
        max_age=settings.session_ttl_minutes * 60,
    )
    return response


@router.post('/logout')
def logout(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    token = request.cookies.get(settings.session_cookie_name)
    if token:
        revoke_web_session(db, token)
    log_audit(db, actor_user_id=principal.id, action='AUTH_LOGOUT', ip=get_client_ip(request))
    db.commit()

    response = JSONResponse({'ok': True})
    response.delete_cookie(settings.session_cookie_name)
    return response


@router.get('/me', response_model=PrincipalOut)
def me(principal: Principal = Depends(get_current_principal)) -> Principal:
    return principal

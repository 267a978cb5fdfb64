import os
import base64
import hashlib
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx
from fastapi import Depends, HTTPException, status, Request
from jose import JWTError, jwt
from sqlmodel import select
from sqlalchemy import delete as sqlalchemy_delete

from . import config
from .board import board_cache
from .db import async_session
from .google_tasks import GoogleTasksClient, get_upstream_transport, send_checked
from .models import Session
from .utils import now_utc, ensure_aware

logger = logging.getLogger(__name__)

# SECRET_KEY should be set in the environment in production. We fall back to a
# predictable value for local testing; the app lifespan refuses to start with
# it unless ALLOW_INSECURE_SECRET is set.
INSECURE_SECRET_FALLBACK = "CHANGE_ME_IN_ENV_FOR_TESTS"
SECRET_KEY = os.getenv("SECRET_KEY", INSECURE_SECRET_FALLBACK)
ALGORITHM = "HS256"

SESSION_COOKIE = "session_token"
CSRF_HEADER = "X-CSRF-Token"


# --- PKCE ---

def base64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def gen_code_verifier() -> str:
    return base64url(secrets.token_bytes(32))


def gen_code_challenge(verifier: str) -> str:
    return base64url(hashlib.sha256(verifier.encode("ascii")).digest())


def gen_state() -> str:
    return base64url(secrets.token_bytes(16))


def build_authorize_url(state: str, code_challenge: str) -> str:
    params = {
        "client_id": config.GOOGLE_CLIENT_ID,
        "redirect_uri": config.REDIRECT_URI,
        "response_type": "code",
        "scope": config.SCOPES,
        "access_type": "offline",
        "prompt": "consent",
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "state": state,
    }
    return f"{config.GOOGLE_AUTH_URL}?{urlencode(params)}"


async def exchange_code(code: str, code_verifier: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> dict:
    """Trade an authorization code for tokens at the provider's token endpoint."""
    form = {
        "client_id": config.GOOGLE_CLIENT_ID,
        "code": code,
        "code_verifier": code_verifier,
        "grant_type": "authorization_code",
        "redirect_uri": config.REDIRECT_URI,
    }
    if config.GOOGLE_CLIENT_SECRET:
        form["client_secret"] = config.GOOGLE_CLIENT_SECRET
    async with httpx.AsyncClient(transport=transport, timeout=config.UPSTREAM_TIMEOUT_SECONDS) as client:
        resp = await send_checked(client, "POST", config.GOOGLE_TOKEN_URL, data=form)
    return resp.json()


# --- server-side sessions ---

async def create_session(token: Optional[str] = None, expires_delta: Optional[timedelta] = None) -> Session:
    """Create an anonymous server-side session row and return it.

    If token is provided it will be used; otherwise a secure random token
    is generated.
    """
    sess_token = token or secrets.token_urlsafe(32)
    expires_at = now_utc() + (expires_delta or timedelta(days=config.SESSION_TTL_DAYS))
    async with async_session() as s:
        row = Session(session_token=sess_token, expires_at=expires_at)
        s.add(row)
        await s.commit()
        await s.refresh(row)
    return row


async def get_session_by_token(session_token: str) -> Optional[Session]:
    async with async_session() as s:
        q = await s.exec(select(Session).where(Session.session_token == session_token))
        row = q.first()
        if not row:
            return None
        expires_at = ensure_aware(row.expires_at)
        if expires_at and expires_at < now_utc():
            # expired: delete row and cached boards, return None
            board_cache.drop_session(session_token)
            try:
                await s.exec(sqlalchemy_delete(Session).where(Session.session_token == session_token))
                await s.commit()
            except Exception:
                logger.exception("failed to delete expired session id=%s", row.id)
            return None
        return row


async def save_oauth_request(session_token: str, state: str, code_verifier: str) -> None:
    async with async_session() as s:
        q = await s.exec(select(Session).where(Session.session_token == session_token))
        row = q.first()
        if not row:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="session not found")
        row.oauth_state = state
        row.code_verifier = code_verifier
        s.add(row)
        await s.commit()


async def store_tokens(session_token: str, tokens: dict, email: Optional[str] = None) -> Optional[Session]:
    """Attach provider tokens to the session and drop the pending OAuth request."""
    async with async_session() as s:
        q = await s.exec(select(Session).where(Session.session_token == session_token))
        row = q.first()
        if not row:
            return None
        row.set_tokens(tokens)
        if email:
            row.email = email.lower()
        row.oauth_state = None
        row.code_verifier = None
        s.add(row)
        await s.commit()
        await s.refresh(row)
        return row


async def clear_oauth_request(session_token: str) -> None:
    async with async_session() as s:
        q = await s.exec(select(Session).where(Session.session_token == session_token))
        row = q.first()
        if row:
            row.oauth_state = None
            row.code_verifier = None
            s.add(row)
            await s.commit()


async def delete_session(session_token: str) -> None:
    board_cache.drop_session(session_token)
    async with async_session() as s:
        try:
            await s.exec(sqlalchemy_delete(Session).where(Session.session_token == session_token))
            await s.commit()
        except Exception:
            logger.exception("failed to delete session")


def set_session_cookie(response, session_token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session_token,
        httponly=True,
        samesite="lax",
        secure=config.COOKIE_SECURE,
        max_age=config.SESSION_TTL_DAYS * 24 * 3600,
        path="/",
    )


# --- CSRF ---

def _csrf_subject(session_token: str) -> str:
    # bind to the session without putting the cookie value in a readable JWT
    return hashlib.sha256(session_token.encode("utf-8")).hexdigest()[:32]


def create_csrf_token(session_token: str, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = {"sub": _csrf_subject(session_token), "type": "csrf"}
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=config.CSRF_TOKEN_EXPIRE_MINUTES)
    # numeric epoch seconds for exp
    to_encode.update({"exp": int(expire.timestamp())})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_csrf_token(token: Optional[str], session_token: str) -> bool:
    if not token:
        return False
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.info("verify_csrf_token JWTError: %s", str(e))
        return False
    if payload.get("type") != "csrf":
        logger.info("verify_csrf_token failed: type mismatch (got %s)", payload.get("type"))
        return False
    if payload.get("sub") != _csrf_subject(session_token):
        logger.info("verify_csrf_token failed: session mismatch")
        return False
    return True


# --- request dependencies ---

async def get_current_session(request: Request) -> Optional[Session]:
    """Session row for the request cookie, or None."""
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return None
    return await get_session_by_token(token)


async def require_auth(session: Optional[Session] = Depends(get_current_session)) -> Session:
    """Dependency that enforces a session holding a live access token."""
    if not session or not session.is_authed:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    return session


async def require_csrf(request: Request, session: Session = Depends(require_auth)) -> Session:
    """require_auth plus a valid X-CSRF-Token header, for mutating routes."""
    if not verify_csrf_token(request.headers.get(CSRF_HEADER), session.session_token):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid csrf token")
    return session


async def get_tasks_client(session: Session = Depends(require_auth),
                           transport: Optional[httpx.AsyncBaseTransport] = Depends(get_upstream_transport)):
    """Per-request tasks API client bound to the session's access token."""
    client = GoogleTasksClient(session.access_token, transport=transport)
    try:
        yield client
    finally:
        await client.aclose()

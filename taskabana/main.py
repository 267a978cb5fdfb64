import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from . import config
from .auth import (
    INSECURE_SECRET_FALLBACK,
    SESSION_COOKIE,
    build_authorize_url,
    clear_oauth_request,
    create_csrf_token,
    create_session,
    delete_session,
    exchange_code,
    gen_code_challenge,
    gen_code_verifier,
    gen_state,
    get_current_session,
    get_tasks_client,
    require_csrf,
    save_oauth_request,
    set_session_cookie,
    store_tokens,
)
from .board import board_cache
from .db import init_db
from .errors import TaskabanaError
from .google_tasks import GoogleTasksClient, get_upstream_transport
from .models import Session
from .utils import read_json

logger = logging.getLogger(__name__)
# Ensure INFO-level messages from this module appear on the server console when
# no handlers are configured.
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from .auth import SECRET_KEY as _SECRET_KEY
    if (not _SECRET_KEY or _SECRET_KEY == INSECURE_SECRET_FALLBACK) and not config.ALLOW_INSECURE_SECRET:
        raise RuntimeError("SECRET_KEY not set or insecure fallback in use; set the SECRET_KEY environment variable before starting the server")
    if not config.GOOGLE_CLIENT_ID:
        logger.warning('GOOGLE_CLIENT_ID is not set; /auth/login will not work')
    await init_db()
    from . import db as _dbmod
    logger.info('starting server using DATABASE_URL=%s', _dbmod.DATABASE_URL)
    yield


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'],
    allow_headers=['Content-Type', 'X-CSRF-Token'],
)

from .kanban_api import router as kanban_router  # noqa: E402
app.include_router(kanban_router)


@app.middleware('http')
async def log_requests(request: Request, call_next):
    resp = await call_next(request)
    logger.info('%s %s -> %s', request.method, request.url.path, resp.status_code)
    return resp


@app.exception_handler(TaskabanaError)
async def taskabana_error_handler(request: Request, exc: TaskabanaError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _tasklist_or_400(tasklist: Optional[str]) -> str:
    if not tasklist:
        raise HTTPException(status_code=400, detail='tasklist required')
    return tasklist


@app.get('/health')
async def health():
    return {'ok': True}


# --- OAuth ---

@app.get('/auth/login')
async def auth_login(request: Request, session: Optional[Session] = Depends(get_current_session)):
    """Start the authorization code flow with PKCE."""
    created = session is None
    if created:
        session = await create_session()
    verifier = gen_code_verifier()
    state = gen_state()
    await save_oauth_request(session.session_token, state, verifier)
    resp = RedirectResponse(build_authorize_url(state, gen_code_challenge(verifier)), status_code=302)
    if created:
        set_session_cookie(resp, session.session_token)
    return resp


@app.get('/auth/callback')
async def auth_callback(request: Request,
                        code: Optional[str] = None,
                        state: Optional[str] = None,
                        error: Optional[str] = None,
                        session: Optional[Session] = Depends(get_current_session),
                        transport: Optional[httpx.AsyncBaseTransport] = Depends(get_upstream_transport)):
    home = RedirectResponse(config.FRONTEND_URL, status_code=302)
    if error:
        logger.warning('oauth provider returned error: %s', error)
        if session:
            await clear_oauth_request(session.session_token)
        return home
    if not session or not session.oauth_state or not code or not state or state != session.oauth_state:
        logger.warning('oauth callback rejected: state mismatch or missing code')
        return home
    try:
        tokens = await exchange_code(code, session.code_verifier or '', transport=transport)
    except TaskabanaError as e:
        logger.warning('token exchange failed: %s', e.detail)
        await clear_oauth_request(session.session_token)
        return home

    email = None
    if tokens.get('access_token'):
        try:
            async with GoogleTasksClient(tokens['access_token'], transport=transport) as client:
                email = (await client.userinfo()).get('email')
        except TaskabanaError as e:
            logger.warning('userinfo lookup after login failed: %s', e.detail)
    await store_tokens(session.session_token, tokens, email=email)
    # tokens changed hands; anything cached for this session is stale
    board_cache.drop_session(session.session_token)
    logger.info('login completed for session id=%s', session.id)
    return home


@app.post('/auth/logout')
async def auth_logout(request: Request):
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        await delete_session(token)
    resp = JSONResponse({'ok': True})
    resp.delete_cookie(SESSION_COOKIE, path='/')
    return resp


@app.get('/api/session')
async def api_session(session: Optional[Session] = Depends(get_current_session)):
    if session is None or not session.is_authed:
        return {'authed': False}
    return {
        'authed': True,
        'email': session.email,
        'csrf_token': create_csrf_token(session.session_token),
    }


@app.get('/api/userinfo')
async def api_userinfo(client: GoogleTasksClient = Depends(get_tasks_client)):
    return await client.userinfo()


@app.get('/api/me')
async def api_me(session: Optional[Session] = Depends(get_current_session)):
    if session is None or not session.is_authed:
        return {'email': None}
    return {'email': session.email}


# --- thin proxy over the tasks API ---

class CreateTaskIn(BaseModel):
    tasklist: Optional[str] = None
    task: Optional[Dict[str, Any]] = None
    parent: Optional[str] = None
    previous: Optional[str] = None


class PatchTaskIn(BaseModel):
    tasklist: Optional[str] = None
    updates: Optional[Dict[str, Any]] = None


class MoveTaskIn(BaseModel):
    tasklist: Optional[str] = None
    previous: Optional[str] = None
    parent: Optional[str] = None


@app.get('/api/tasklists')
async def api_tasklists(client: GoogleTasksClient = Depends(get_tasks_client)):
    return await client.list_tasklists()


@app.get('/api/tasks')
async def api_list_tasks(tasklist: Optional[str] = None, client: GoogleTasksClient = Depends(get_tasks_client)):
    tasklist = _tasklist_or_400(tasklist)
    return {'items': await client.list_tasks(tasklist)}


@app.post('/api/tasks')
async def api_create_task(request: Request,
                          session: Session = Depends(require_csrf),
                          client: GoogleTasksClient = Depends(get_tasks_client)):
    payload = await read_json(request, CreateTaskIn)
    if not payload.tasklist or payload.task is None:
        raise HTTPException(status_code=400, detail='tasklist and task required')
    created = await client.create_task(payload.tasklist, payload.task, parent=payload.parent, previous=payload.previous)
    board_cache.invalidate(session.session_token, payload.tasklist)
    return created


@app.patch('/api/tasks/{task_id}')
async def api_patch_task(task_id: str, request: Request,
                         session: Session = Depends(require_csrf),
                         client: GoogleTasksClient = Depends(get_tasks_client)):
    payload = await read_json(request, PatchTaskIn)
    if not payload.tasklist or payload.updates is None:
        raise HTTPException(status_code=400, detail='tasklist and updates required')
    updated = await client.patch_task(payload.tasklist, task_id, payload.updates)
    board_cache.invalidate(session.session_token, payload.tasklist)
    return updated


@app.delete('/api/tasks/{task_id}')
async def api_delete_task(task_id: str, tasklist: Optional[str] = None,
                          session: Session = Depends(require_csrf),
                          client: GoogleTasksClient = Depends(get_tasks_client)):
    tasklist = _tasklist_or_400(tasklist)
    await client.delete_task(tasklist, task_id)
    board_cache.invalidate(session.session_token, tasklist)
    return {'ok': True}


@app.post('/api/tasks/{task_id}/move')
async def api_move_task(task_id: str, request: Request,
                        session: Session = Depends(require_csrf),
                        client: GoogleTasksClient = Depends(get_tasks_client)):
    payload = await read_json(request, MoveTaskIn)
    tasklist = _tasklist_or_400(payload.tasklist)
    moved = await client.move_task(tasklist, task_id, previous=payload.previous, parent=payload.parent)
    board_cache.invalidate(session.session_token, tasklist)
    return moved

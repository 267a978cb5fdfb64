from typing import Optional
import logging
import sys

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .auth import get_current_session, get_tasks_client, require_auth, require_csrf
from .board import BoardService, SortMode
from .errors import ValidationError
from .google_tasks import GoogleTasksClient
from .kanban import Column
from .models import Session
from .prefs import clear_selected_list, load_prefs, resolve_selected_list, save_prefs, user_key_for
from .utils import read_json

# Kanban-level endpoints. Reads and gestures answer with the refetched board
# so the client never renders an order the server has not confirmed.
router = APIRouter(prefix='/api')
logger = logging.getLogger(__name__)
if logger.level == logging.NOTSET:
    logger.setLevel(logging.INFO)
if not logger.handlers:
    _h = logging.StreamHandler(sys.stdout)
    _h.setFormatter(logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s'))
    logger.addHandler(_h)


class BoardCreateIn(BaseModel):
    tasklist: Optional[str] = None
    column: Optional[str] = None
    title: Optional[str] = None
    notes: Optional[str] = None
    due: Optional[str] = None
    parent: Optional[str] = None
    generation: Optional[int] = None
    sort: Optional[str] = None


class ColumnMoveIn(BaseModel):
    tasklist: Optional[str] = None
    column: Optional[str] = None
    generation: Optional[int] = None
    sort: Optional[str] = None


class ReorderIn(BaseModel):
    tasklist: Optional[str] = None
    parent: Optional[str] = None
    before_id: Optional[str] = None
    generation: Optional[int] = None
    sort: Optional[str] = None


def _column_or_400(value: Optional[str]) -> Column:
    if not value:
        raise HTTPException(status_code=400, detail='column required')
    try:
        return Column.from_str(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _service(client: GoogleTasksClient, session: Session, tasklist: Optional[str], sort: Optional[str]) -> BoardService:
    if not tasklist:
        raise HTTPException(status_code=400, detail='tasklist required')
    return BoardService(client, session.session_token, tasklist, sort=SortMode.from_str(sort))


@router.get('/board', response_class=JSONResponse)
async def get_board(tasklist: Optional[str] = None, sort: Optional[str] = None,
                    session: Session = Depends(require_auth),
                    client: GoogleTasksClient = Depends(get_tasks_client)):
    """Fresh projection of a list: three columns plus subtasks by parent."""
    svc = _service(client, session, tasklist, sort)
    return await svc.board(refresh=True)


@router.post('/board/tasks', response_class=JSONResponse)
async def create_board_task(request: Request,
                            session: Session = Depends(require_csrf),
                            client: GoogleTasksClient = Depends(get_tasks_client)):
    body = await read_json(request, BoardCreateIn)
    column = _column_or_400(body.column or Column.IN_PROGRESS.value)
    if not body.title or not body.title.strip():
        raise HTTPException(status_code=400, detail='title required')
    svc = _service(client, session, body.tasklist, body.sort)
    created, snap = await svc.create_in_column(column, body.title, notes=body.notes, due=body.due,
                                               parent=body.parent, generation=body.generation)
    logger.info('created task %s in %s/%s', created.get('id'), body.tasklist, column.value)
    return {'task': created, 'board': svc.render(snap)}


@router.post('/board/tasks/{task_id}/column', response_class=JSONResponse)
async def move_board_task_to_column(task_id: str, request: Request,
                                    session: Session = Depends(require_csrf),
                                    client: GoogleTasksClient = Depends(get_tasks_client)):
    body = await read_json(request, ColumnMoveIn)
    column = _column_or_400(body.column)
    svc = _service(client, session, body.tasklist, body.sort)
    snap = await svc.drop_to_column(task_id, column, generation=body.generation)
    return {'board': svc.render(snap)}


@router.post('/board/tasks/{task_id}/reorder', response_class=JSONResponse)
async def reorder_board_task(task_id: str, request: Request,
                             session: Session = Depends(require_csrf),
                             client: GoogleTasksClient = Depends(get_tasks_client)):
    body = await read_json(request, ReorderIn)
    svc = _service(client, session, body.tasklist, body.sort)
    if body.parent:
        snap = await svc.reorder_subtask(task_id, body.parent, before_id=body.before_id, generation=body.generation)
    else:
        snap = await svc.reorder(task_id, before_id=body.before_id, generation=body.generation)
    return {'board': svc.render(snap)}


@router.delete('/board/tasks/{task_id}', response_class=JSONResponse)
async def delete_board_task(task_id: str, tasklist: Optional[str] = None, generation: Optional[int] = None,
                            sort: Optional[str] = None,
                            session: Session = Depends(require_csrf),
                            client: GoogleTasksClient = Depends(get_tasks_client)):
    svc = _service(client, session, tasklist, sort)
    snap = await svc.delete(task_id, generation=generation)
    return {'ok': True, 'board': svc.render(snap)}


# --- preferences ---

def _prefs_out(row) -> dict:
    return {'selected_list_id': row.selected_list_id, 'theme': row.theme}


@router.get('/prefs', response_class=JSONResponse)
async def get_prefs(session: Optional[Session] = Depends(get_current_session)):
    row = await load_prefs(user_key_for(session))
    return _prefs_out(row)


@router.put('/prefs', response_class=JSONResponse)
async def put_prefs(request: Request, session: Session = Depends(require_csrf)):
    body = await read_json(request)
    theme = body.get('theme')
    if theme is not None and not isinstance(theme, str):
        raise HTTPException(status_code=400, detail='theme must be a string')
    kwargs = {'theme': theme}
    if 'selected_list_id' in body:
        sel = body.get('selected_list_id')
        if sel is not None and not isinstance(sel, str):
            raise HTTPException(status_code=400, detail='selected_list_id must be a string or null')
        kwargs['selected_list_id'] = sel
    try:
        row = await save_prefs(user_key_for(session), **kwargs)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.detail)
    return _prefs_out(row)


@router.get('/prefs/tasklist', response_class=JSONResponse)
async def get_selected_tasklist(session: Session = Depends(require_auth),
                                client: GoogleTasksClient = Depends(get_tasks_client)):
    """Which list to open: the remembered one if it still exists, else the first."""
    lists = (await client.list_tasklists()).get('items') or []
    user_key = user_key_for(session)
    row = await load_prefs(user_key)
    remembered = row.selected_list_id
    selected = resolve_selected_list(lists, remembered)
    if remembered and selected != remembered:
        # the remembered list is gone upstream; stop offering it
        await clear_selected_list(user_key)
    return {
        'selected_list_id': selected,
        'remembered': remembered,
        'lists': [{'id': l.get('id'), 'title': l.get('title')} for l in lists],
    }

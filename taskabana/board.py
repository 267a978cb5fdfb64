"""Board snapshots and gesture orchestration.

A gesture takes the last snapshot of a list, asks the reconciler in
taskabana.kanban for a plan, sends the mutation and then the reposition,
and finally blocks on a refetch. The refetched snapshot, not the plan, is
what the caller gets back.
"""
import asyncio
import itertools
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from . import config
from .errors import Conflict, NotFound, TaskabanaError, ValidationError
from .google_tasks import GoogleTasksClient
from .kanban import (
    AppendToEnd,
    Column,
    InsertBefore,
    MoveToEnd,
    SiblingIndex,
    Task,
    effective_parent,
    parse_notes,
    plan_column_move,
    plan_move,
    plan_relabel,
)
from .utils import from_date_input_value, now_utc, parse_rfc3339, to_date_input_value

logger = logging.getLogger(__name__)


class SortMode(str, Enum):
    MANUAL = 'manual'
    DUE = 'due'

    @classmethod
    def from_str(cls, value: Optional[str]) -> 'SortMode':
        if not value:
            return cls.MANUAL
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValidationError(f'unknown sort mode {value!r}')


class FetchState(str, Enum):
    IDLE = 'idle'
    FETCHING = 'fetching'
    ERROR = 'error'


@dataclass(frozen=True)
class Snapshot:
    tasklist: str
    tasks: Tuple[Task, ...]
    generation: int
    fetched_at: datetime

    def get(self, task_id: Optional[str]) -> Optional[Task]:
        if not task_id:
            return None
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None

    @property
    def index(self) -> SiblingIndex:
        return SiblingIndex.from_tasks(self.tasks)

    def parent_of(self, task: Task) -> Optional[str]:
        return effective_parent(task, {t.id for t in self.tasks})


@dataclass
class BoardEntry:
    snapshot: Optional[Snapshot] = None
    generation: int = 0
    state: FetchState = FetchState.IDLE
    error: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class BoardCache:
    """Last snapshot per (session token, tasklist), least recently used first out.

    Generations come from one counter for the whole cache, so an evicted and
    recreated entry never reissues a number a client may still hold.
    """

    def __init__(self, max_entries: int = config.BOARD_CACHE_MAX_ENTRIES):
        self.max_entries = max_entries
        self._entries: 'OrderedDict[Tuple[Any, str], BoardEntry]' = OrderedDict()
        self._generations = itertools.count(1)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key) -> bool:
        return key in self._entries

    def entry(self, session_key: Any, tasklist: str) -> BoardEntry:
        key = (session_key, tasklist)
        e = self._entries.get(key)
        if e is None:
            e = self._entries[key] = BoardEntry()
            self._evict()
        else:
            self._entries.move_to_end(key)
        return e

    def _evict(self) -> None:
        # entries with a gesture in flight are skipped
        for key in list(self._entries)[:-1]:
            if len(self._entries) <= self.max_entries:
                break
            if not self._entries[key].lock.locked():
                del self._entries[key]

    def snapshot(self, session_key: Any, tasklist: str) -> Optional[Snapshot]:
        e = self._entries.get((session_key, tasklist))
        return e.snapshot if e else None

    def invalidate(self, session_key: Any, tasklist: Optional[str] = None) -> None:
        """Forget snapshots so the next read refetches.

        The next refetch still takes a fresh generation from the cache counter.
        """
        for (sk, tl), e in self._entries.items():
            if sk == session_key and (tasklist is None or tl == tasklist):
                e.snapshot = None

    def drop_session(self, session_key: Any) -> None:
        for key in [k for k in self._entries if k[0] == session_key]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()

    async def refresh(self, client: GoogleTasksClient, session_key: Any, tasklist: str) -> Snapshot:
        """Fetch the list; on failure the previous snapshot is left in place."""
        e = self.entry(session_key, tasklist)
        e.state = FetchState.FETCHING
        try:
            items = await client.list_tasks(tasklist)
        except TaskabanaError as exc:
            e.state = FetchState.ERROR
            e.error = exc.code
            logger.warning('refetch of %s failed: %s', tasklist, exc.detail)
            raise
        e.generation = next(self._generations)
        e.snapshot = Snapshot(
            tasklist=tasklist,
            tasks=tuple(Task.from_api(i) for i in items),
            generation=e.generation,
            fetched_at=now_utc(),
        )
        e.state = FetchState.IDLE
        e.error = None
        return e.snapshot


board_cache = BoardCache()


def _due_key(task: Task):
    dt = parse_rfc3339(task.due)
    return (dt is None, dt.timestamp() if dt else 0.0)


def sort_tasks(tasks: Iterable[Task], sort: Union[str, SortMode] = SortMode.MANUAL) -> List[Task]:
    items = list(tasks)
    if SortMode.from_str(sort) is SortMode.DUE:
        # stable: undated keep server order at the end
        return sorted(items, key=_due_key)
    return items


def project_board(tasks: Iterable[Task], sort: Union[str, SortMode] = SortMode.MANUAL) -> Dict[str, Any]:
    """Three columns of top-level tasks plus subtasks grouped by parent."""
    items = list(tasks)
    known = {t.id for t in items}
    columns: Dict[str, List[Task]] = {c.value: [] for c in Column}
    children: Dict[str, List[Task]] = {}
    for t in items:
        parent = effective_parent(t, known)
        if parent is None:
            columns[t.column.value].append(t)
        else:
            children.setdefault(parent, []).append(t)
    return {
        'columns': {k: [_card(t) for t in sort_tasks(v, sort)] for k, v in columns.items()},
        'children': {k: [_card(t) for t in sort_tasks(v, sort)] for k, v in children.items()},
    }


def _card(task: Task) -> Dict[str, Any]:
    d = task.to_dict()
    # value for a date input; '' when there is no due date
    d['due_date'] = to_date_input_value(task.due)
    return d


class BoardService:
    """Kanban gestures on one task list for one session."""

    def __init__(self, client: GoogleTasksClient, session_key: Any, tasklist: str,
                 sort: Union[str, SortMode] = SortMode.MANUAL, cache: Optional[BoardCache] = None):
        if not tasklist:
            raise ValidationError('tasklist required')
        self.client = client
        self.session_key = session_key
        self.tasklist = tasklist
        self.sort = SortMode.from_str(sort) if not isinstance(sort, SortMode) else sort
        self.cache = cache if cache is not None else board_cache

    @property
    def entry(self) -> BoardEntry:
        return self.cache.entry(self.session_key, self.tasklist)

    async def refresh(self) -> Snapshot:
        return await self.cache.refresh(self.client, self.session_key, self.tasklist)

    async def snapshot(self) -> Snapshot:
        snap = self.cache.snapshot(self.session_key, self.tasklist)
        if snap is None:
            snap = await self.refresh()
        return snap

    def render(self, snap: Snapshot) -> Dict[str, Any]:
        board = project_board(snap.tasks, self.sort)
        board.update({
            'tasklist': self.tasklist,
            'generation': snap.generation,
            'sort': self.sort.value,
            'fetched_at': snap.fetched_at.isoformat(),
        })
        return board

    async def board(self, refresh: bool = True) -> Dict[str, Any]:
        async with self.entry.lock:
            snap = await self.refresh() if refresh else await self.snapshot()
        return self.render(snap)

    async def _stale(self, exc: TaskabanaError) -> TaskabanaError:
        """Refetch after a stale plan and hand back the error to raise."""
        try:
            await self.refresh()
        except TaskabanaError:
            logger.warning('refetch after stale plan on %s failed', self.tasklist)
        return exc

    async def _planning_snapshot(self, generation: Optional[int]) -> Snapshot:
        snap = await self.snapshot()
        if generation is not None and generation != snap.generation:
            logger.info('stale generation %s for %s (current %s)', generation, self.tasklist, snap.generation)
            raise await self._stale(Conflict(f'board changed since generation {generation}'))
        return snap

    async def _call(self, awaitable):
        try:
            return await awaitable
        except (NotFound, Conflict) as exc:
            logger.info('upstream rejected plan on %s: %s', self.tasklist, exc.code)
            raise await self._stale(exc)

    async def _require_task(self, snap: Snapshot, task_id: str) -> Task:
        task = snap.get(task_id)
        if task is None:
            raise await self._stale(NotFound(f'task {task_id} not in list'))
        return task

    async def create_in_column(self, column: Union[str, Column], title: str, notes: Optional[str] = None,
                               due: Optional[str] = None, parent: Optional[str] = None,
                               generation: Optional[int] = None) -> Tuple[Dict[str, Any], Snapshot]:
        column = Column.from_str(column)
        title = (title or '').strip()
        if not title:
            raise ValidationError('title required')
        try:
            due_value = from_date_input_value(due)
        except ValueError as e:
            raise ValidationError(str(e))
        parent = parent or None

        async with self.entry.lock:
            snap = await self._planning_snapshot(generation)
            if parent:
                await self._require_task(snap, parent)
            body, tags = parse_notes(notes)
            relabel = plan_relabel(Task(id='', title=title, notes=body, tags=tags), column)
            payload: Dict[str, Any] = {'title': title, 'status': relabel.status.value}
            if relabel.notes:
                payload['notes'] = relabel.notes
            if due_value:
                payload['due'] = due_value

            previous = None
            if parent or self.sort is SortMode.MANUAL:
                previous = plan_move(AppendToEnd(column=column, parent=parent), snap.index).previous
            created = await self._call(self.client.create_task(self.tasklist, payload, parent=parent, previous=previous))
            if parent and created.get('parent') != parent:
                logger.info('created task %s did not land under %s; moving', created.get('id'), parent)
                created = await self._call(
                    self.client.move_task(self.tasklist, created['id'], previous=previous, parent=parent))
            snap = await self.refresh()
        return created, snap

    async def drop_to_column(self, task_id: str, column: Union[str, Column],
                             generation: Optional[int] = None) -> Snapshot:
        column = Column.from_str(column)
        async with self.entry.lock:
            snap = await self._planning_snapshot(generation)
            task = await self._require_task(snap, task_id)
            plan = plan_column_move(task, column, snap.index, parent=snap.parent_of(task))
            await self._call(self.client.patch_task(self.tasklist, task_id, plan.relabel.to_patch()))
            if self.sort is SortMode.MANUAL:
                await self._call(self.client.move_task(self.tasklist, task_id,
                                                       previous=plan.move.previous, parent=plan.move.parent))
            return await self.refresh()

    async def reorder(self, task_id: str, parent: Optional[str] = None, before_id: Optional[str] = None,
                      generation: Optional[int] = None) -> Snapshot:
        """Move a task within its column: before `before_id`, or to the end."""
        parent = parent or None
        async with self.entry.lock:
            snap = await self._planning_snapshot(generation)
            task = await self._require_task(snap, task_id)
            if parent:
                await self._require_task(snap, parent)
            if before_id:
                change = InsertBefore(task_id=task_id, column=task.column, parent=parent, before_id=before_id)
            else:
                change = MoveToEnd(task_id=task_id, column=task.column, parent=parent)
            plan = plan_move(change, snap.index)
            await self._call(self.client.move_task(self.tasklist, task_id, previous=plan.previous, parent=plan.parent))
            return await self.refresh()

    async def reorder_subtask(self, task_id: str, parent: str, before_id: Optional[str] = None,
                              generation: Optional[int] = None) -> Snapshot:
        if not parent:
            raise ValidationError('parent required')
        return await self.reorder(task_id, parent=parent, before_id=before_id, generation=generation)

    async def delete(self, task_id: str, generation: Optional[int] = None) -> Snapshot:
        async with self.entry.lock:
            snap = await self._planning_snapshot(generation)
            await self._require_task(snap, task_id)
            await self._call(self.client.delete_task(self.tasklist, task_id))
            return await self.refresh()

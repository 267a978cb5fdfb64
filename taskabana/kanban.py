"""Kanban projection and order reconciliation for a Google Tasks list.

Column membership is derived, never stored:

  completed    status is done
  icebucket    open, and the notes carry the #icebucket marker
  in-progress  everything else

The remote API keeps sibling order as a singly linked "previous" relation.
Every function here is pure: callers pass the sibling ordering observed in
their last fetch and get back the `previous`/`parent` values to send. The
result is only a request; the order is known to be applied once a refetch
shows it.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

ICEBUCKET_TAG = '#icebucket'
# Markers recognized in notes text, matched as case-insensitive substrings
# (`x#icebucket` and `#icebuckets` both count). Anything else that looks like
# a hashtag stays in the body untouched.
KNOWN_TAGS: Tuple[str, ...] = (ICEBUCKET_TAG,)


def _tag_pattern(tag: str):
    return re.compile(re.escape(tag), re.IGNORECASE)


_TAG_PATTERNS = {tag: _tag_pattern(tag) for tag in KNOWN_TAGS}


class Column(str, Enum):
    IN_PROGRESS = 'in-progress'
    ICEBUCKET = 'icebucket'
    COMPLETED = 'completed'

    @classmethod
    def from_str(cls, value: Union[str, 'Column']) -> 'Column':
        """Parse a column key; accepts the legacy `inprogress` spelling."""
        if isinstance(value, Column):
            return value
        v = (value or '').strip().lower()
        if v in ('inprogress', 'in_progress'):
            return cls.IN_PROGRESS
        try:
            return cls(v)
        except ValueError:
            raise ValueError(f'unknown column: {value!r}')


class TaskStatus(str, Enum):
    """Task status using the remote API's wire values."""
    OPEN = 'needsAction'
    DONE = 'completed'

    @classmethod
    def from_str(cls, value: Optional[str]) -> 'TaskStatus':
        if isinstance(value, TaskStatus):
            return value
        if (value or '').strip().lower() in ('completed', 'done'):
            return cls.DONE
        return cls.OPEN


# --- notes tag codec ---

def strip_tags(text: Optional[str], tags: Iterable[str] = KNOWN_TAGS) -> str:
    """Remove every occurrence of the given markers from notes text.

    Only lines a marker was removed from are touched: they are trimmed, and
    dropped when nothing else is left on them. Every other line keeps its
    indentation, and blank lines stay where they are.
    """
    if not text:
        return ''
    patterns = [_TAG_PATTERNS.get(t) or _tag_pattern(t) for t in tags]
    out: List[str] = []
    for line in text.split('\n'):
        cleaned = line
        for pat in patterns:
            # removal can splice a new occurrence together (`#ice#icebucketbucket`)
            while pat.search(cleaned):
                cleaned = pat.sub('', cleaned)
        if cleaned != line:
            cleaned = re.sub(r"[ \t]{2,}", ' ', cleaned).strip()
            if not cleaned:
                continue
        out.append(cleaned)
    return '\n'.join(out)


def parse_notes(text: Optional[str]) -> Tuple[str, FrozenSet[str]]:
    """Split raw notes into (body, recognized tags)."""
    if not text:
        return '', frozenset()
    tags = frozenset(tag for tag, pat in _TAG_PATTERNS.items() if pat.search(text))
    if not tags:
        return text, tags
    return strip_tags(text, tags), tags


def serialize_notes(body: Optional[str], tags: Iterable[str] = ()) -> str:
    """Inverse of parse_notes: body first, then one line per marker."""
    body = body or ''
    tagset = set(tags)
    parts = [body] if body.strip() else []
    parts.extend(t for t in KNOWN_TAGS if t in tagset)
    return '\n'.join(parts)


# --- task model ---

@dataclass(frozen=True)
class Task:
    id: str
    title: str = ''
    notes: str = ''
    tags: FrozenSet[str] = field(default_factory=frozenset)
    status: TaskStatus = TaskStatus.OPEN
    due: Optional[str] = None
    parent: Optional[str] = None
    position: Optional[str] = None
    updated: Optional[str] = None
    completed: Optional[str] = None

    @property
    def is_done(self) -> bool:
        return self.status is TaskStatus.DONE

    @property
    def column(self) -> Column:
        return categorize(self)

    @property
    def notes_text(self) -> str:
        return serialize_notes(self.notes, self.tags)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> 'Task':
        """Build a Task from a remote API resource dict."""
        body, tags = parse_notes(data.get('notes'))
        return cls(
            id=str(data.get('id') or ''),
            title=data.get('title') or '',
            notes=body,
            tags=tags,
            status=TaskStatus.from_str(data.get('status')),
            due=data.get('due') or None,
            parent=data.get('parent') or None,
            position=data.get('position') or None,
            updated=data.get('updated') or None,
            completed=data.get('completed') or None,
        )

    def to_api(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            'id': self.id,
            'title': self.title,
            'notes': self.notes_text,
            'status': self.status.value,
            'due': self.due,
            'parent': self.parent,
            'position': self.position,
            'updated': self.updated,
            'completed': self.completed,
        }
        return {k: v for k, v in out.items() if v not in (None, '') or k in ('id', 'title', 'status')}

    def to_dict(self) -> Dict[str, Any]:
        """API shape plus the derived column, for board payloads."""
        d = self.to_api()
        d['column'] = self.column.value
        return d


TaskLike = Union[Task, Mapping[str, Any]]


def _coerce_task(task: TaskLike) -> Task:
    if isinstance(task, Task):
        return task
    return Task.from_api(task)


def categorize(task: TaskLike) -> Column:
    t = _coerce_task(task)
    if t.status is TaskStatus.DONE:
        return Column.COMPLETED
    if ICEBUCKET_TAG in t.tags or _TAG_PATTERNS[ICEBUCKET_TAG].search(t.notes or ''):
        return Column.ICEBUCKET
    return Column.IN_PROGRESS


# --- relabel ---

@dataclass(frozen=True)
class Relabel:
    """Status/notes mutation expressing a destination column."""
    status: TaskStatus
    body: str = ''
    tags: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def notes(self) -> str:
        return serialize_notes(self.body, self.tags)

    def to_patch(self) -> Dict[str, Any]:
        return {'status': self.status.value, 'notes': self.notes}

    def apply(self, task: Task) -> Task:
        return replace(task, status=self.status, notes=self.body, tags=self.tags)


def plan_relabel(task: TaskLike, column: Union[str, Column]) -> Relabel:
    """Compute the status/notes a task needs to land in `column`.

    completed: status done, marker removed everywhere.
    icebucket: status open, marker present exactly once.
    in-progress: status open, marker removed everywhere.
    """
    column = Column.from_str(column)
    t = _coerce_task(task)
    # Tolerate tasks built by hand with the marker still inside the body.
    body, found = parse_notes(t.notes)
    tags = set(t.tags) | set(found)
    tags.discard(ICEBUCKET_TAG)
    if column is Column.ICEBUCKET:
        tags.add(ICEBUCKET_TAG)
    status = TaskStatus.DONE if column is Column.COMPLETED else TaskStatus.OPEN
    return Relabel(status=status, body=body, tags=frozenset(tags))


# --- sibling ordering ---

SiblingKey = Tuple[Optional[str], Column]


class SiblingIndex(Mapping):
    """Read-only lookup of (parent or None, column) -> ordered task ids."""

    def __init__(self, groups: Optional[Mapping[SiblingKey, Sequence[str]]] = None):
        self._groups: Dict[SiblingKey, Tuple[str, ...]] = {}
        for key, ids in (groups or {}).items():
            parent, column = key
            self._groups[(parent or None, Column.from_str(column))] = tuple(ids)

    def __getitem__(self, key: SiblingKey) -> Tuple[str, ...]:
        parent, column = key
        return self._groups[(parent or None, Column.from_str(column))]

    def __iter__(self) -> Iterator[SiblingKey]:
        return iter(self._groups)

    def __len__(self) -> int:
        return len(self._groups)

    def group(self, parent: Optional[str], column: Union[str, Column]) -> Tuple[str, ...]:
        return self._groups.get((parent or None, Column.from_str(column)), ())

    @classmethod
    def from_tasks(cls, tasks: Iterable[TaskLike]) -> 'SiblingIndex':
        """Group a flat fetch, keeping fetch order inside each group.

        A child whose parent is not in the list is treated as top-level.
        """
        items = [_coerce_task(t) for t in tasks]
        known = {t.id for t in items}
        groups: Dict[SiblingKey, List[str]] = {}
        for t in items:
            groups.setdefault((effective_parent(t, known), t.column), []).append(t.id)
        return cls(groups)


def effective_parent(task: Task, known_ids: Iterable[str]) -> Optional[str]:
    """Parent id if it names a task in the same list, else None."""
    if task.parent and task.parent != task.id and task.parent in known_ids:
        return task.parent
    return None


@dataclass(frozen=True)
class AppendToEnd:
    """Place at the end of the destination group (create, cross-column move)."""
    column: Union[str, Column]
    parent: Optional[str] = None
    task_id: Optional[str] = None


@dataclass(frozen=True)
class InsertBefore:
    """Place immediately before `before_id`; append when it is omitted."""
    task_id: str
    column: Union[str, Column]
    parent: Optional[str] = None
    before_id: Optional[str] = None


@dataclass(frozen=True)
class MoveToEnd:
    """Explicit drop past the last sibling."""
    task_id: str
    column: Union[str, Column]
    parent: Optional[str] = None


Change = Union[AppendToEnd, InsertBefore, MoveToEnd]


@dataclass(frozen=True)
class MovePlan:
    previous: Optional[str] = None
    parent: Optional[str] = None

    def to_params(self) -> Dict[str, str]:
        """Query parameters for a reposition request; absent means none."""
        params: Dict[str, str] = {}
        if self.previous:
            params['previous'] = self.previous
        if self.parent:
            params['parent'] = self.parent
        return params


def _sibling_ids(siblings: Any, parent: Optional[str], column: Column, exclude: Optional[str]) -> List[str]:
    if siblings is None:
        return []
    try:
        group = siblings.get((parent or None, column))
    except (AttributeError, TypeError, ValueError):
        return []
    if not group:
        return []
    ids: List[str] = []
    try:
        for s in group:
            sid = getattr(s, 'id', s)
            if isinstance(sid, str) and sid and sid != exclude:
                ids.append(sid)
    except TypeError:
        return []
    return ids


def plan_move(change: Change, siblings: Optional[Mapping[SiblingKey, Sequence[str]]]) -> MovePlan:
    """Compute the `previous`/`parent` pair realizing `change`.

    The moving task is removed from its group before any index is taken, so
    the result never points at itself. Missing groups count as empty and an
    unknown `before_id` falls back to append-to-end.
    """
    column = Column.from_str(change.column)
    parent = change.parent or None
    moving = change.task_id
    ids = _sibling_ids(siblings, parent, column, exclude=moving)

    if isinstance(change, InsertBefore) and change.before_id and change.before_id != moving:
        try:
            idx = ids.index(change.before_id)
        except ValueError:
            logger.info('before_id %s not among siblings of %s/%s; appending', change.before_id, parent, column.value)
        else:
            return MovePlan(previous=ids[idx - 1] if idx > 0 else None, parent=parent)

    return MovePlan(previous=ids[-1] if ids else None, parent=parent)


@dataclass(frozen=True)
class ColumnMovePlan:
    relabel: Relabel
    move: MovePlan


def plan_column_move(task: TaskLike, column: Union[str, Column],
                     siblings: Optional[Mapping[SiblingKey, Sequence[str]]],
                     parent: Optional[str] = None) -> ColumnMovePlan:
    """Relabel for `column`, then append to the end of its group under `parent`."""
    column = Column.from_str(column)
    t = _coerce_task(task)
    relabel = plan_relabel(t, column)
    move = plan_move(AppendToEnd(column=column, parent=parent, task_id=t.id), siblings)
    return ColumnMovePlan(relabel=relabel, move=move)

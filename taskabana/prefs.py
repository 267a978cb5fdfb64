"""Remembered task list and theme, one row per user key."""
import logging
from typing import Iterable, Mapping, Optional

from sqlmodel import select

from . import config
from .db import async_session
from .errors import ValidationError
from .models import Session, UserPrefs
from .utils import now_utc

logger = logging.getLogger(__name__)

DEFAULT_THEME = config.THEMES[0]

_UNSET = object()


def user_key_for(session: Optional[Session]) -> str:
    if session is None or not session.email:
        return ''
    return session.email.strip().lower()


async def load_prefs(user_key: str) -> UserPrefs:
    """Stored prefs, or an unsaved default row."""
    async with async_session() as s:
        q = await s.exec(select(UserPrefs).where(UserPrefs.user_key == user_key))
        row = q.first()
    if row is None:
        return UserPrefs(user_key=user_key, selected_list_id=None, theme=DEFAULT_THEME)
    return row


async def save_prefs(user_key: str, selected_list_id=_UNSET, theme: Optional[str] = None) -> UserPrefs:
    """Upsert the given fields; omitted fields keep their stored value."""
    if theme is not None and theme not in config.THEMES:
        raise ValidationError(f"unknown theme {theme!r}; expected one of {', '.join(config.THEMES)}")
    async with async_session() as s:
        q = await s.exec(select(UserPrefs).where(UserPrefs.user_key == user_key))
        row = q.first()
        if row is None:
            row = UserPrefs(user_key=user_key, theme=DEFAULT_THEME)
        if selected_list_id is not _UNSET:
            row.selected_list_id = selected_list_id or None
        if theme is not None:
            row.theme = theme
        row.updated_at = now_utc()
        s.add(row)
        await s.commit()
        await s.refresh(row)
    return row


async def clear_selected_list(user_key: str) -> None:
    await save_prefs(user_key, selected_list_id=None)


def resolve_selected_list(lists: Iterable[Mapping], remembered: Optional[str]) -> Optional[str]:
    """Remembered list id when it still exists, else the first list, else None."""
    ids = [str(l.get('id')) for l in lists if l.get('id')]
    if remembered and remembered in ids:
        return remembered
    if remembered:
        logger.info('remembered tasklist %s no longer exists; falling back', remembered)
    return ids[0] if ids else None

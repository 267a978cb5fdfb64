from datetime import datetime, timezone
import logging
import re
from typing import Optional

from fastapi import HTTPException
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; treat those as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_rfc3339(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp as returned by the tasks API.

    Returns None for empty or unparseable input.
    """
    if not value:
        return None
    s = value.strip()
    if s.endswith('Z') or s.endswith('z'):
        s = s[:-1] + '+00:00'
    try:
        return ensure_aware(datetime.fromisoformat(s))
    except ValueError:
        logger.debug('unparseable timestamp %r', value)
        return None


def from_date_input_value(value: Optional[str]) -> Optional[str]:
    """Convert a `YYYY-MM-DD` date to the API's due timestamp.

    The API only keeps the date part of `due`; pinning it to noon UTC keeps
    the same calendar day in every timezone within +-11h. Full timestamps are
    passed through unchanged.
    """
    if not value:
        return None
    v = value.strip()
    if _DATE_ONLY_RE.match(v):
        # validate the calendar date itself
        datetime.strptime(v, '%Y-%m-%d')
        return f'{v}T12:00:00.000Z'
    if parse_rfc3339(v) is None:
        raise ValueError(f'invalid due date: {value!r}')
    return v


def to_date_input_value(value: Optional[str]) -> str:
    """Inverse of from_date_input_value: the UTC calendar date or ''."""
    dt = parse_rfc3339(value)
    if dt is None:
        return ''
    return dt.astimezone(timezone.utc).strftime('%Y-%m-%d')


async def read_json(request, model=None):
    """Decode a JSON object body, optionally into a pydantic model.

    Malformed input is a 400 rather than FastAPI's 422 so every input
    check on the API answers the same way.
    """
    try:
        body = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail='invalid JSON')
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail='JSON object expected')
    if model is None:
        return body
    try:
        return model(**body)
    except PydanticValidationError as e:
        raise HTTPException(status_code=400, detail=f'invalid body: {e.errors()[0].get("msg", "")}')

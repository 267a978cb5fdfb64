"""Async client for the Google Tasks REST API and the OIDC userinfo endpoint.

One client is built per request from the session's access token. Upstream
failures are mapped onto taskabana.errors so routes never see raw httpx
exceptions.
"""
import logging
import sys
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from . import config
from .errors import NetworkFailure, error_for_status

logger = logging.getLogger(__name__)
if not logger.handlers:
    _h = logging.StreamHandler(sys.stdout)
    _h.setFormatter(logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s'))
    logger.addHandler(_h)
    logger.setLevel(logging.INFO)


def get_upstream_transport() -> Optional[httpx.AsyncBaseTransport]:
    """FastAPI dependency for the transport used on upstream calls.

    None means the default network transport; tests override this.
    """
    return None


def _seg(value: str) -> str:
    return quote(str(value), safe='')


def _error_message(payload: Any) -> str:
    # Google wraps errors as {"error": {"code", "message", "status"}};
    # the token endpoint uses {"error": "...", "error_description": "..."}.
    if not isinstance(payload, dict):
        return ''
    err = payload.get('error')
    if isinstance(err, dict):
        return str(err.get('message') or err.get('status') or '')
    if err:
        desc = payload.get('error_description')
        return f'{err}: {desc}' if desc else str(err)
    return ''


async def send_checked(client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
    """Issue a request and raise the mapped TaskabanaError on failure."""
    try:
        resp = await client.request(method, url, **kwargs)
    except httpx.TransportError as e:
        logger.warning('upstream %s %s failed: %s', method, url, e)
        raise NetworkFailure(f'upstream request failed: {e.__class__.__name__}') from e
    if resp.status_code >= 400:
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        detail = _error_message(payload) or resp.reason_phrase
        logger.warning('upstream %s %s -> %s: %s', method, url, resp.status_code, detail)
        raise error_for_status(resp.status_code, detail, payload)
    return resp


class GoogleTasksClient:
    def __init__(self, access_token: str, transport: Optional[httpx.AsyncBaseTransport] = None,
                 base_url: str = config.TASKS_API_BASE, timeout: float = config.UPSTREAM_TIMEOUT_SECONDS):
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers={'Authorization': f'Bearer {access_token}'},
            transport=transport,
            timeout=timeout,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> 'GoogleTasksClient':
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def _json(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        resp = await send_checked(self._http, method, url, **kwargs)
        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()

    async def list_tasklists(self) -> Dict[str, Any]:
        items: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {'maxResults': config.TASKS_MAX_RESULTS}
        while True:
            data = await self._json('GET', '/users/@me/lists', params=params)
            items.extend(data.get('items') or [])
            token = data.get('nextPageToken')
            if not token:
                break
            params['pageToken'] = token
        return {'items': items}

    async def list_tasks(self, tasklist: str) -> List[Dict[str, Any]]:
        """All tasks of a list in server order, completed and hidden included."""
        items: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {
            'showCompleted': 'true',
            'showHidden': 'true',
            'showDeleted': 'false',
            'maxResults': config.TASKS_MAX_RESULTS,
        }
        while True:
            data = await self._json('GET', f'/lists/{_seg(tasklist)}/tasks', params=params)
            items.extend(data.get('items') or [])
            token = data.get('nextPageToken')
            if not token:
                break
            params['pageToken'] = token
        return items

    async def create_task(self, tasklist: str, task: Dict[str, Any],
                          parent: Optional[str] = None, previous: Optional[str] = None) -> Dict[str, Any]:
        params = {}
        if parent:
            params['parent'] = parent
        if previous:
            params['previous'] = previous
        return await self._json('POST', f'/lists/{_seg(tasklist)}/tasks', params=params, json=task)

    async def patch_task(self, tasklist: str, task_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        return await self._json('PATCH', f'/lists/{_seg(tasklist)}/tasks/{_seg(task_id)}', json=updates)

    async def delete_task(self, tasklist: str, task_id: str) -> None:
        await self._json('DELETE', f'/lists/{_seg(tasklist)}/tasks/{_seg(task_id)}')

    async def move_task(self, tasklist: str, task_id: str,
                        previous: Optional[str] = None, parent: Optional[str] = None) -> Dict[str, Any]:
        """Reposition a task; no `previous` means first among its siblings,
        no `parent` means top level."""
        params = {}
        if parent:
            params['parent'] = parent
        if previous:
            params['previous'] = previous
        return await self._json('POST', f'/lists/{_seg(tasklist)}/tasks/{_seg(task_id)}/move', params=params)

    async def userinfo(self) -> Dict[str, Any]:
        return await self._json('GET', config.OIDC_USERINFO_URL)

import sys
import pathlib
import os
import warnings
import pytest
import pytest_asyncio
import httpx
from httpx import AsyncClient, ASGITransport

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

# Ensure a secure SECRET_KEY is available during tests so the app lifespan
# check doesn't raise; settings are read at import time, so set them first.
os.environ.setdefault('SECRET_KEY', 'test-secret-key-for-unit-tests')
os.environ.setdefault('GOOGLE_CLIENT_ID', 'test-client-id.apps.googleusercontent.com')
_TEST_DB = ROOT / 'tests' / '.taskabana_test.db'
os.environ.setdefault('DATABASE_URL', f'sqlite+aiosqlite:///{_TEST_DB}')
if _TEST_DB.exists():
    _TEST_DB.unlink()

try:
    from sqlalchemy.exc import SAWarning
    warnings.filterwarnings('ignore', category=SAWarning)
except ImportError:
    pass

import logging as _logging
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool', 'sqlmodel'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

from taskabana.main import app  # noqa: E402
from taskabana.db import init_db  # noqa: E402
from taskabana.board import board_cache  # noqa: E402
from taskabana.google_tasks import get_upstream_transport  # noqa: E402

from fake_google import FakeGoogle  # noqa: E402


@pytest_asyncio.fixture
async def ensure_db():
    await init_db()
    board_cache.clear()
    yield
    board_cache.clear()


@pytest.fixture
def google():
    """Fake Google with one list 'L1' wired in as the upstream transport."""
    fake = FakeGoogle()
    fake.add_list('L1', 'Inbox')
    app.dependency_overrides[get_upstream_transport] = lambda: fake.transport()
    yield fake
    app.dependency_overrides.pop(get_upstream_transport, None)


@pytest_asyncio.fixture
async def client(ensure_db, google):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def login(ac: AsyncClient, fake: FakeGoogle, code: str = 'auth-code-1') -> str:
    """Run the login flow against the fake provider; returns the CSRF token."""
    r = await ac.get('/auth/login')
    assert r.status_code == 302
    loc = httpx.URL(r.headers['location'])
    fake.register_code(code, loc.params['code_challenge'])
    r = await ac.get('/auth/callback', params={'code': code, 'state': loc.params['state']})
    assert r.status_code == 302
    r = await ac.get('/api/session')
    body = r.json()
    assert body['authed'] is True
    ac.headers['X-CSRF-Token'] = body['csrf_token']
    return body['csrf_token']


@pytest_asyncio.fixture
async def authed_client(client, google):
    await login(client, google)
    yield client

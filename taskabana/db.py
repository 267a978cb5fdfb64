from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

import os
import logging

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./taskabana.db")


def _sqlite_path_from_url(url: str | None) -> str | None:
    if not url:
        return None
    if url.startswith('sqlite+aiosqlite:///'):
        path = url.replace('sqlite+aiosqlite:///', '', 1)
    elif url.startswith('sqlite:///'):
        path = url.replace('sqlite:///', '', 1)
    else:
        return None
    if not path or path == ':memory:':
        return None
    if path.startswith('./'):
        path = path[2:]
    return os.path.abspath(path)


def _ensure_sqlite_dir(url: str | None) -> None:
    db_path = _sqlite_path_from_url(url)
    if not db_path:
        return
    parent = os.path.dirname(db_path)
    if parent and not os.path.isdir(parent):
        logger.info('creating database directory %s', parent)
        os.makedirs(parent, exist_ok=True)


_ensure_sqlite_dir(DATABASE_URL)

# NullPool: aiosqlite connections are cheap and tests open the file from
# several event loops.
engine = create_async_engine(DATABASE_URL, echo=False, future=True, poolclass=NullPool)

async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    # import for side effect: table registration on SQLModel.metadata
    from . import models  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

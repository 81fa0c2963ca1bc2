"""Alembic environment.

Migrations run on the connection handed in by ``init_database()``; running
``alembic upgrade head`` from the backend dir builds its own engine from
``DATABASE_URL``.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

from alembic import context

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import Base, create_engine_for  # noqa: E402

target_metadata = Base.metadata


def _run_with_connection(connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=connection.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()


async def _run_standalone() -> None:
    from config import settings

    engine = create_engine_for(settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(_run_with_connection)
    await engine.dispose()


connection = context.config.attributes.get("connection")
if connection is not None:
    _run_with_connection(connection)
else:
    asyncio.run(_run_standalone())

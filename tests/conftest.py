import os

import asyncpg
import pytest
import pytest_asyncio
from typing import AsyncGenerator
from testcontainers.postgres import PostgresContainer

from leadflow.config import settings
from leadflow.db.db import Database

DB_DIR = os.path.join(os.path.dirname(__file__), "..", "leadflow", "db")


@pytest.fixture(scope="session")
def postgres_container():
    """Start a PostgreSQL container for integration tests."""
    postgres = PostgresContainer(
        image="postgres:16-alpine",
        username="testuser",
        password="testpass",
        dbname="testdb",
        driver="asyncpg",
    )
    postgres.start()

    yield postgres

    postgres.stop()


@pytest_asyncio.fixture(scope="function")
async def test_db_pool(postgres_container) -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a test database pool with a fresh schema for each test."""
    pool = await asyncpg.create_pool(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        database=postgres_container.dbname,
        user=postgres_container.username,
        password=postgres_container.password,
        min_size=1,
        max_size=5,
    )

    async with pool.acquire() as conn:
        await conn.execute("DROP TABLE IF EXISTS queue_jobs CASCADE")
        await conn.execute("DROP TABLE IF EXISTS lead_discovery_leads CASCADE")
        await conn.execute("DROP TABLE IF EXISTS lead_discovery_runs CASCADE")
        await conn.execute("DROP TABLE IF EXISTS leads CASCADE")
        await conn.execute("DROP TABLE IF EXISTS users CASCADE")

        # Functions first, then tables; each file runs whole to keep plpgsql bodies intact
        with open(os.path.join(DB_DIR, "functions", "functions.sql")) as f:
            await conn.execute(f.read())

        models_dir = os.path.join(DB_DIR, "models")
        for schema_file in sorted(os.listdir(models_dir)):
            if schema_file.endswith(".sql"):
                with open(os.path.join(models_dir, schema_file)) as f:
                    await conn.execute(f.read())

    yield pool

    await pool.close()


@pytest_asyncio.fixture
async def test_db(test_db_pool) -> Database:
    """A Database wrapper around the test pool."""
    db = Database(settings)
    db.pool = test_db_pool
    return db

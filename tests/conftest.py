from datetime import datetime, timezone
from typing import Any, Dict

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from querygate.api.endpoints.skill import get_skill
from querygate.core.config import Settings
from querygate.core.skill import GuardedQuerySkill
from querygate.main import create_app

CURRENT_YEAR = datetime.now(timezone.utc).year
VALID_INPUT = "2025年北京销售额超过100万的客户"


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def build_settings(tmp_path, **overrides) -> Settings:
    """Settings pointing at a throwaway SQLite file and audit directory."""
    base = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        "audit": {"storage": {"type": "file", "path": str(tmp_path / "audit")}},
    }
    return Settings(**_merge(base, overrides))


async def seed_database(engine):
    async with engine.begin() as conn:
        await conn.execute(
            text("CREATE TABLE data (id INTEGER PRIMARY KEY, name TEXT, score REAL)")
        )
        await conn.execute(text("CREATE TABLE customers (id INTEGER PRIMARY KEY, name TEXT)"))
        await conn.execute(
            text(
                "CREATE TABLE sales (id INTEGER PRIMARY KEY, customer_id INTEGER, "
                "region TEXT, year INTEGER, amount REAL)"
            )
        )
        await conn.execute(
            text("INSERT INTO data (id, name, score) VALUES (:id, :name, :score)"),
            [
                {"id": 1, "name": "alpha", "score": 1.5},
                {"id": 2, "name": "beta", "score": None},
                {"id": 3, "name": "gamma", "score": 3.25},
            ],
        )
        await conn.execute(
            text("INSERT INTO customers (id, name) VALUES (:id, :name)"),
            [{"id": 1, "name": "Acme"}, {"id": 2, "name": "Globex"}],
        )
        await conn.execute(
            text(
                "INSERT INTO sales (customer_id, region, year, amount) "
                "VALUES (:customer_id, :region, :year, :amount)"
            ),
            [
                {"customer_id": 1, "region": "north", "year": CURRENT_YEAR, "amount": 1500000.0},
                {"customer_id": 2, "region": "south", "year": CURRENT_YEAR, "amount": 200.5},
                {"customer_id": 1, "region": "north", "year": CURRENT_YEAR, "amount": 300.0},
                {"customer_id": 2, "region": "east", "year": CURRENT_YEAR - 1, "amount": 99.0},
            ],
        )


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides) -> Settings:
        return build_settings(tmp_path, **overrides)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


# Fresh SQLite file per test, seeded with the tables the templates read
@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await seed_database(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def skill(settings, engine):
    query_skill = GuardedQuerySkill(settings, engine)
    yield query_skill
    await query_skill.safe_shutdown()


# Client
@pytest_asyncio.fixture(scope="function")
async def client(settings, skill):
    app = create_app(settings)
    app.dependency_overrides[get_skill] = lambda: skill

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import create_async_engine

from querygate.core.context import RequestContext
from querygate.core.encoding import verify_checksum
from querygate.core.exceptions import ExecutionError, SkillClosedError
from querygate.core.schemas import SkillStatus
from querygate.core.semantic.evolver import TEMPLATES
from querygate.core.skill import GuardedQuerySkill

VALID_INPUT = "2025年北京销售额超过100万的客户"


def count_statements(engine):
    """Record every statement the backend actually runs."""
    statements = []

    @event.listens_for(engine.sync_engine, "before_cursor_execute")
    def _record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    return statements


def read_audit(settings):
    day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    path = f"{settings.audit.storage.path}/audit_{day}.log"
    with open(path, encoding="utf-8") as fh:
        return [json.loads(line) for line in fh]


@pytest.mark.asyncio
async def test_capability_id(skill):
    assert skill.capability_id() == "querygate-1.0.0"


@pytest.mark.asyncio
async def test_successful_execution(skill):
    """Valid input runs the first registered template and returns encoded rows"""
    result = await skill.execute(VALID_INPUT, RequestContext.from_timeout(30))

    assert result.status == SkillStatus.SUCCESS
    assert len(result.query_id) == 24
    assert verify_checksum(result.result)

    meta = json.loads(result.meta)
    assert meta["template_used"] == TEMPLATES[1]
    assert meta["row_count"] == 2
    assert meta["input_length"] == len(VALID_INPUT.encode("utf-8"))
    assert "timestamp" in meta


@pytest.mark.asyncio
async def test_no_context_means_no_deadline(skill):
    result = await skill.execute(VALID_INPUT)
    assert result.status == SkillStatus.SUCCESS


@pytest.mark.asyncio
async def test_repeat_input_is_served_from_cache(skill, engine):
    """Second identical call returns the same result without touching the backend"""
    statements = count_statements(engine)

    first = await skill.execute(VALID_INPUT)
    executed = len(statements)
    second = await skill.execute(VALID_INPUT)

    assert executed >= 1
    assert len(statements) == executed
    assert second == first


@pytest.mark.asyncio
async def test_disabled_cache_runs_every_time(make_settings, engine):
    skill = GuardedQuerySkill(make_settings(cache={"enabled": False}), engine)
    statements = count_statements(engine)

    first = await skill.execute(VALID_INPUT)
    executed = len(statements)
    second = await skill.execute(VALID_INPUT)

    assert len(statements) > executed
    assert second.query_id != first.query_id
    await skill.safe_shutdown()


@pytest.mark.asyncio
async def test_forbidden_keyword_is_rejected(skill, engine):
    statements = count_statements(engine)
    result = await skill.execute("DROP TABLE users")

    assert result.status == SkillStatus.REJECTED
    assert result.meta.decode() == "L3: forbidden keyword detected: DROP"
    assert result.result == b""
    assert statements == []


@pytest.mark.asyncio
async def test_rejections_are_not_cached(skill):
    await skill.execute("DROP TABLE users")
    assert len(skill.cache) == 0


@pytest.mark.asyncio
async def test_short_deadline_is_rejected(skill):
    result = await skill.execute("long running query", RequestContext.from_timeout(0.1))
    assert result.status == SkillStatus.REJECTED
    assert result.meta.decode() == "L5: context deadline exceeded"


@pytest.mark.asyncio
async def test_backend_failure_is_an_error_result(make_settings, tmp_path):
    # Same settings, but a database with none of the expected tables
    empty = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    skill = GuardedQuerySkill(make_settings(), empty)

    result = await skill.execute(VALID_INPUT)

    assert result.status == SkillStatus.ERROR
    assert result.meta.decode().startswith("execution_failed: ")
    assert "no such table" in result.meta.decode()
    assert len(skill.cache) == 0
    await skill.safe_shutdown()


@pytest.mark.asyncio
async def test_max_rows_caps_result(make_settings, engine):
    skill = GuardedQuerySkill(
        make_settings(security={"resource_limits": {"max_rows": 1}}), engine
    )
    result = await skill.execute(VALID_INPUT)

    assert result.status == SkillStatus.SUCCESS
    assert json.loads(result.meta)["row_count"] == 1
    await skill.safe_shutdown()


@pytest.mark.asyncio
@pytest.mark.parametrize("isolation_level", ["none", "basic"])
async def test_other_isolation_levels(make_settings, engine, isolation_level):
    skill = GuardedQuerySkill(
        make_settings(execution={"isolation_level": isolation_level}), engine
    )
    result = await skill.execute(VALID_INPUT)
    assert result.status == SkillStatus.SUCCESS
    await skill.safe_shutdown()


@pytest.mark.asyncio
async def test_shutdown_is_idempotent_and_final(skill):
    await skill.safe_shutdown()
    await skill.safe_shutdown()

    assert skill.closed
    with pytest.raises(SkillClosedError):
        await skill.execute(VALID_INPUT)


@pytest.mark.asyncio
async def test_audit_trail_for_success_and_cache_hit(skill, settings):
    await skill.execute(VALID_INPUT)
    await skill.execute(VALID_INPUT)
    # Shutdown drains the async audit queue
    await skill.safe_shutdown()

    events = [entry["event_type"] for entry in read_audit(settings)]
    assert events == [
        "execution_start",
        "success",
        "execution_end",
        "execution_start",
        "cache_hit",
        "execution_end",
    ]


@pytest.mark.asyncio
async def test_audit_trail_for_rejection(skill, settings):
    await skill.execute("DROP TABLE users")
    await skill.safe_shutdown()

    entries = read_audit(settings)
    assert [e["event_type"] for e in entries] == ["execution_start", "rejected", "execution_end"]
    assert entries[1]["data"]["reason"] == "L3: forbidden keyword detected: DROP"
    assert entries[1]["data"]["input"] == "DROP TABLE users"
    assert len({e["query_id"] for e in entries}) == 1


@pytest.mark.asyncio
async def test_execution_error_is_audited(make_settings, tmp_path):
    settings = make_settings(performance={"async_processing": False})
    empty = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    skill = GuardedQuerySkill(settings, empty)

    await skill.execute(VALID_INPUT)

    entries = read_audit(settings)
    error = next(e for e in entries if e["event_type"] == "execution_error")
    assert error["data"]["timeout"] == "10s"
    assert "no such table" in error["data"]["error"]
    await skill.safe_shutdown()


@pytest.mark.asyncio
async def test_mixed_type_column_does_not_escape(make_settings, tmp_path):
    """An untyped column holding both numbers and text still yields a result"""
    mixed = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'mixed.db'}")
    year = datetime.now(timezone.utc).year
    async with mixed.begin() as conn:
        await conn.execute(text("CREATE TABLE sales (customer_id, region, year, amount)"))
        await conn.execute(
            text("INSERT INTO sales VALUES (:c, :r, :y, :a)"),
            [
                {"c": 1, "r": 1, "y": year, "a": 10},
                {"c": 2, "r": "north", "y": year, "a": 20.5},
            ],
        )
    skill = GuardedQuerySkill(make_settings(), mixed)

    result = await skill.execute(VALID_INPUT)

    assert result.status == SkillStatus.SUCCESS
    assert json.loads(result.meta)["row_count"] == 2
    await skill.safe_shutdown()


@pytest.mark.asyncio
async def test_row_decoding_failure_is_an_error_result(skill, monkeypatch):
    def failing_decode(fetched, max_rows):
        raise ExecutionError("row decoding failed: bad value")

    monkeypatch.setattr("querygate.core.skill.decode_rows", failing_decode)

    result = await skill.execute(VALID_INPUT)

    assert result.status == SkillStatus.ERROR
    assert result.meta.decode() == "execution_failed: row decoding failed: bad value"
    assert len(skill.cache) == 0


class StalledEngine:
    """Engine stand-in whose connections never open in time."""

    @asynccontextmanager
    async def connect(self):
        await asyncio.sleep(5)
        yield None

    async def dispose(self):
        pass


@pytest.mark.asyncio
@pytest.mark.parametrize("isolation_level", ["none", "basic", "full"])
async def test_total_timeout_is_reported_as_such(make_settings, isolation_level):
    settings = make_settings(
        execution={"isolation_level": isolation_level, "timeout": {"total": "200ms"}}
    )
    skill = GuardedQuerySkill(settings, StalledEngine())

    result = await skill.execute(VALID_INPUT)

    assert result.status == SkillStatus.ERROR
    assert result.meta.decode() == "execution_failed: execution timeout after 0.2s"
    await skill.safe_shutdown()


@pytest.mark.asyncio
async def test_concurrent_callers(skill):
    """Several requests in flight at once each get their own complete result"""
    inputs = [
        VALID_INPUT,
        "上海客户订单总额排名",
        "广州地区年度销售汇总",
        "深圳门店季度营收对比",
        VALID_INPUT,
        "DROP TABLE users",
    ]

    results = await asyncio.gather(*(skill.execute(text_) for text_ in inputs))

    statuses = [r.status for r in results]
    assert statuses == [SkillStatus.SUCCESS] * 5 + [SkillStatus.REJECTED]
    assert len(skill.evolver) == 4
    assert all(verify_checksum(r.result) for r in results[:5])

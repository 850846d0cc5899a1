"""
Tests for Mutual Exclusion Gate.

============================================================
TEST SCENARIOS
============================================================
1. N concurrent acquire(0) → exactly one token
2. Busy gate with timeout 0 → None immediately
3. Busy gate with timeout → token once released
4. Release by non-holder → GateError
5. hold() releases on success, error and cancellation
6. Postgres backend without engine → ConfigurationError

============================================================
"""

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from meltdown_controller.config import GateBackend, GateConfig
from meltdown_controller.gate import (
    InProcessGate,
    PostgresAdvisoryGate,
    create_gate,
)
from meltdown_controller.types import (
    ConfigurationError,
    GateBusyError,
    GateError,
    LockToken,
)


# ============================================================
# TEST: IN-PROCESS GATE
# ============================================================

class TestInProcessGate:
    """Tests for the single-process gate."""

    @pytest.mark.asyncio
    async def test_acquire_and_release(self, gate, clock):
        token = await gate.acquire(holder="cycle")

        assert token is not None
        assert token.gate_key == 12345
        assert token.holder == "cycle"
        assert token.acquired_at == clock.now()
        assert gate.is_held()

        await gate.release(token)

        assert not gate.is_held()

    @pytest.mark.asyncio
    async def test_concurrent_acquire_exactly_one_wins(self, gate):
        results = await asyncio.gather(
            *(gate.acquire(timeout=0.0, holder=f"c{i}") for i in range(10))
        )

        winners = [token for token in results if token is not None]
        assert len(winners) == 1
        assert gate.holder == winners[0]

    @pytest.mark.asyncio
    async def test_busy_returns_none_immediately(self, gate):
        await gate.acquire(holder="first")

        started = time.monotonic()
        token = await gate.acquire(timeout=0.0, holder="second")

        assert token is None
        assert time.monotonic() - started < 0.05

    @pytest.mark.asyncio
    async def test_busy_until_timeout(self, gate):
        await gate.acquire(holder="first")

        token = await gate.acquire(timeout=0.05, holder="second")

        assert token is None

    @pytest.mark.asyncio
    async def test_waiter_gets_gate_after_release(self, gate):
        first = await gate.acquire(holder="first")

        async def release_soon():
            await asyncio.sleep(0.02)
            await gate.release(first)

        waiter = asyncio.create_task(gate.acquire(timeout=1.0, holder="second"))
        await release_soon()
        token = await waiter

        assert token is not None
        assert token.holder == "second"

    @pytest.mark.asyncio
    async def test_two_waiters_one_wins(self, gate):
        first = await gate.acquire(holder="first")
        waiters = [
            asyncio.create_task(gate.acquire(timeout=0.1, holder=f"w{i}"))
            for i in range(2)
        ]
        await asyncio.sleep(0)

        await gate.release(first)
        results = await asyncio.gather(*waiters)

        assert sum(1 for token in results if token is not None) == 1

    @pytest.mark.asyncio
    async def test_release_by_non_holder(self, gate, clock):
        await gate.acquire(holder="owner")
        forged = LockToken(
            gate_key=12345,
            token_id="forged",
            holder="intruder",
            acquired_at=clock.now(),
        )

        with pytest.raises(GateError):
            await gate.release(forged)

        assert gate.is_held()

    @pytest.mark.asyncio
    async def test_double_release(self, gate):
        token = await gate.acquire()
        await gate.release(token)

        with pytest.raises(GateError):
            await gate.release(token)

    @pytest.mark.asyncio
    async def test_anonymous_holder(self, gate):
        token = await gate.acquire()

        assert token.holder == "anonymous"


# ============================================================
# TEST: SCOPED HOLD
# ============================================================

class TestHold:
    """Tests for the hold() context manager."""

    @pytest.mark.asyncio
    async def test_releases_on_success(self, gate):
        async with gate.hold(holder="scoped") as token:
            assert gate.holder == token

        assert not gate.is_held()

    @pytest.mark.asyncio
    async def test_releases_on_error(self, gate):
        with pytest.raises(ValueError):
            async with gate.hold(holder="scoped"):
                raise ValueError("boom")

        assert not gate.is_held()

    @pytest.mark.asyncio
    async def test_releases_on_cancellation(self, gate):
        entered = asyncio.Event()

        async def holder():
            async with gate.hold(holder="cancelled"):
                entered.set()
                await asyncio.sleep(10)

        task = asyncio.create_task(holder())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not gate.is_held()

    @pytest.mark.asyncio
    async def test_busy_raises(self, gate):
        await gate.acquire(holder="first")

        with pytest.raises(GateBusyError) as exc_info:
            async with gate.hold(timeout=0.0, holder="second"):
                pass

        assert exc_info.value.gate_key == 12345
        assert exc_info.value.holder == "second"


# ============================================================
# TEST: POSTGRES ADVISORY GATE
# ============================================================

def make_engine(lock_results):
    """Mock AsyncEngine whose connection answers pg_try_advisory_lock."""
    conn = MagicMock()
    results = []
    for value in lock_results:
        result = MagicMock()
        result.scalar.return_value = value
        results.append(result)
    conn.execute = AsyncMock(side_effect=results + [MagicMock()])
    conn.close = AsyncMock()
    conn.invalidate = AsyncMock()

    engine = MagicMock()
    engine.connect = AsyncMock(return_value=conn)
    return engine, conn


class TestPostgresAdvisoryGate:
    """Tests for the advisory lock gate with a mocked engine."""

    @pytest.mark.asyncio
    async def test_acquire_and_release(self, clock):
        engine, conn = make_engine([True])
        gate = PostgresAdvisoryGate(engine, key=777, clock=clock)

        token = await gate.acquire(holder="cycle")
        await gate.release(token)

        assert token is not None
        assert token.gate_key == 777
        lock_sql = str(conn.execute.await_args_list[0].args[0])
        unlock_sql = str(conn.execute.await_args_list[1].args[0])
        assert "pg_try_advisory_lock" in lock_sql
        assert "pg_advisory_unlock" in unlock_sql
        assert conn.execute.await_args_list[0].args[1] == {"key": 777}
        conn.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_busy_returns_none(self, clock):
        engine, conn = make_engine([False])
        gate = PostgresAdvisoryGate(engine, key=777, clock=clock)

        token = await gate.acquire(timeout=0.0)

        assert token is None
        conn.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_polls_until_free(self, clock):
        engine, conn = make_engine([False, False, True])
        gate = PostgresAdvisoryGate(
            engine, key=777, poll_interval_seconds=0.01, clock=clock
        )

        token = await gate.acquire(timeout=1.0)

        assert token is not None
        assert conn.execute.await_count == 3

    @pytest.mark.asyncio
    async def test_query_failure_raises_gate_error(self, clock):
        engine, conn = make_engine([])
        conn.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("down")))
        gate = PostgresAdvisoryGate(engine, key=777, clock=clock)

        with pytest.raises(GateError):
            await gate.acquire()

        conn.invalidate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_release_unknown_token(self, clock):
        engine, _ = make_engine([])
        gate = PostgresAdvisoryGate(engine, key=777, clock=clock)
        token = LockToken(
            gate_key=777, token_id="nope", holder="x", acquired_at=clock.now()
        )

        with pytest.raises(GateError):
            await gate.release(token)


# ============================================================
# TEST: FACTORY
# ============================================================

class TestCreateGate:
    """Tests for create_gate()."""

    def test_memory_backend(self, clock):
        gate = create_gate(GateConfig(backend=GateBackend.MEMORY, key=99), clock=clock)

        assert isinstance(gate, InProcessGate)
        assert gate.key == 99

    def test_postgres_backend(self, clock):
        engine, _ = make_engine([])

        gate = create_gate(GateConfig(backend=GateBackend.POSTGRES), engine=engine, clock=clock)

        assert isinstance(gate, PostgresAdvisoryGate)

    def test_postgres_backend_needs_engine(self):
        with pytest.raises(ConfigurationError):
            create_gate(GateConfig(backend=GateBackend.POSTGRES))

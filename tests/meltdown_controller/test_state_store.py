"""
Tests for Trading State Store.

============================================================
TEST SCENARIOS
============================================================
1. SYSTEM pause of enabled trading → PAUSED
2. SYSTEM pause over ADMIN pause → UNCHANGED
3. ADMIN pause over SYSTEM pause → REASON_UPDATED, admin owns it
4. Resume below recorded privilege → PermissionDeniedError
5. Resume while enabled → no-op
6. Lost compare-and-set / storage failure → PersistenceError,
   previous state kept
7. Writes without a gate token → GateError

============================================================
"""

from dataclasses import replace
from datetime import timedelta

import pytest
import pytest_asyncio

from meltdown_controller.config import ResumePolicyConfig
from meltdown_controller.interfaces import StaticAdminIdentity
from meltdown_controller.repository import InMemoryTradingStatePersistence
from meltdown_controller.state_store import TradingStateStore
from meltdown_controller.types import (
    Actor,
    ActorKind,
    GateError,
    PauseOutcome,
    PermissionDeniedError,
    PersistenceError,
    PrivilegeLevel,
    TradingState,
)


class FlakyPersistence(InMemoryTradingStatePersistence):
    """In-memory record whose reads or writes can be made to fail."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.fail_load = False
        self.fail_write = False
        self.lose_race = False

    async def load(self):
        if self.fail_load:
            raise OSError("disk unavailable")
        return await super().load()

    async def compare_and_set(self, expected_version, new_state):
        if self.fail_write:
            raise OSError("disk full")
        if self.lose_race:
            return False
        return await super().compare_and_set(expected_version, new_state)


@pytest_asyncio.fixture
async def token(gate):
    token = await gate.acquire(holder="test")
    yield token
    if gate.is_held():
        await gate.release(token)


# ============================================================
# TEST: PAUSE
# ============================================================

class TestPause:
    """Tests for pause transitions."""

    @pytest.mark.asyncio
    async def test_initial_state_enabled(self, store):
        state = await store.current_state()

        assert state.enabled is True
        assert state.version == 0
        assert await store.is_trading_enabled() is True

    @pytest.mark.asyncio
    async def test_system_pause(self, store, token):
        outcome = await store.pause("Meltdown detected: x", Actor.system(), token)

        state = await store.current_state()
        assert outcome == PauseOutcome.PAUSED
        assert state.enabled is False
        assert state.reason == "Meltdown detected: x"
        assert state.changed_by.kind == ActorKind.SYSTEM
        assert state.privilege == PrivilegeLevel.SYSTEM
        assert state.version == 1

    @pytest.mark.asyncio
    async def test_system_pause_does_not_override_admin_pause(self, store, token):
        """Scenario: admin maintenance pause survives a meltdown."""
        await store.pause("maintenance", Actor.admin("42"), token)

        outcome = await store.pause("Meltdown detected: y", Actor.system(), token)

        state = await store.current_state()
        assert outcome == PauseOutcome.UNCHANGED
        assert state.reason == "maintenance"
        assert state.changed_by == Actor.admin("42")
        assert state.version == 1

    @pytest.mark.asyncio
    async def test_admin_pause_takes_over_system_pause(self, store, token):
        await store.pause("Meltdown detected: z", Actor.system(), token)

        outcome = await store.pause("investigating", Actor.admin("42"), token)

        state = await store.current_state()
        assert outcome == PauseOutcome.REASON_UPDATED
        assert state.reason == "investigating"
        assert state.privilege == PrivilegeLevel.ADMIN
        assert state.version == 2

    @pytest.mark.asyncio
    async def test_repeated_system_pause_updates_reason(self, store, token):
        await store.pause("first", Actor.system(), token)

        outcome = await store.pause("second", Actor.system(), token)

        assert outcome == PauseOutcome.REASON_UPDATED
        assert (await store.current_state()).reason == "second"

    @pytest.mark.asyncio
    async def test_pause_requires_token(self, store):
        with pytest.raises(GateError):
            await store.pause("no gate", Actor.system(), None)

        assert await store.is_trading_enabled() is True

    @pytest.mark.asyncio
    async def test_actor_without_privilege_cannot_pause(self, persistence, clock, token):
        store = TradingStateStore(
            persistence=persistence,
            admin_identity=StaticAdminIdentity(default=PrivilegeLevel.NONE),
            clock=clock,
        )

        with pytest.raises(PermissionDeniedError):
            await store.pause("nope", Actor.admin("999"), token)

        assert await store.is_trading_enabled() is True


# ============================================================
# TEST: RESUME
# ============================================================

class TestResume:
    """Tests for resume transitions and the precedence rule."""

    @pytest.mark.asyncio
    async def test_admin_resumes_system_pause(self, store, token):
        await store.pause("meltdown", Actor.system(), token)

        state = await store.resume(Actor.admin("42"), token)

        assert state.enabled is True
        assert state.reason == "Resumed by ADMIN(42)"
        assert state.version == 2
        assert await store.is_trading_enabled() is True

    @pytest.mark.asyncio
    async def test_system_cannot_resume_admin_pause(self, store, token):
        await store.pause("maintenance", Actor.admin("42"), token)

        with pytest.raises(PermissionDeniedError) as exc_info:
            await store.resume(Actor.system(), token)

        assert exc_info.value.required == PrivilegeLevel.ADMIN
        assert exc_info.value.actual == PrivilegeLevel.SYSTEM
        assert await store.is_trading_enabled() is False

    @pytest.mark.asyncio
    async def test_admin_cannot_resume_superadmin_pause(self, store, token):
        await store.pause("incident", Actor.admin("1"), token)

        with pytest.raises(PermissionDeniedError):
            await store.resume(Actor.admin("42"), token)

        state = await store.current_state()
        assert state.enabled is False
        assert state.privilege == PrivilegeLevel.SUPERADMIN

    @pytest.mark.asyncio
    async def test_superadmin_resumes_admin_pause(self, store, token):
        await store.pause("maintenance", Actor.admin("42"), token)

        state = await store.resume(Actor.admin("1"), token)

        assert state.enabled is True

    @pytest.mark.asyncio
    async def test_resume_while_enabled_is_noop(self, store, token):
        before = await store.current_state()

        state = await store.resume(Actor.admin("42"), token)

        assert state == before
        assert state.version == 0

    @pytest.mark.asyncio
    async def test_precedence_can_be_disabled(self, persistence, admin_identity, clock, token):
        store = TradingStateStore(
            persistence=persistence,
            admin_identity=admin_identity,
            policy=ResumePolicyConfig(enforce_admin_precedence=False),
            clock=clock,
        )
        await store.pause("maintenance", Actor.admin("42"), token)

        outcome = await store.pause("meltdown", Actor.system(), token)
        state = await store.resume(Actor.system(), token)

        assert outcome == PauseOutcome.REASON_UPDATED
        assert state.enabled is True

    @pytest.mark.asyncio
    async def test_resume_requires_token(self, store, token):
        await store.pause("meltdown", Actor.system(), token)

        with pytest.raises(GateError):
            await store.resume(Actor.admin("42"), None)


# ============================================================
# TEST: PERSISTENCE
# ============================================================

class TestPersistence:
    """Tests for compare-and-set and storage failures."""

    @pytest.fixture
    def flaky(self, clock):
        return FlakyPersistence(clock)

    @pytest.fixture
    def flaky_store(self, flaky, admin_identity, clock):
        return TradingStateStore(
            persistence=flaky,
            admin_identity=admin_identity,
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_lost_race_raises(self, flaky, flaky_store, token):
        flaky.lose_race = True

        with pytest.raises(PersistenceError, match="changed concurrently"):
            await flaky_store.pause("meltdown", Actor.system(), token)

        flaky.lose_race = False
        assert await flaky_store.is_trading_enabled() is True

    @pytest.mark.asyncio
    async def test_write_failure_keeps_previous_state(self, flaky, flaky_store, token):
        await flaky_store.pause("meltdown", Actor.system(), token)
        flaky.fail_write = True

        with pytest.raises(PersistenceError):
            await flaky_store.resume(Actor.admin("42"), token)

        flaky.fail_write = False
        state = await flaky_store.current_state()
        assert state.enabled is False
        assert state.reason == "meltdown"

    @pytest.mark.asyncio
    async def test_load_failure_raises(self, flaky, flaky_store):
        flaky.fail_load = True

        with pytest.raises(PersistenceError):
            await flaky_store.current_state()

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self, persistence, clock):
        first = replace(TradingState.initial(clock.now()), enabled=False, version=1)

        assert await persistence.compare_and_set(0, first) is True
        assert await persistence.compare_and_set(0, first) is False
        assert (await persistence.load()).version == 1

    @pytest.mark.asyncio
    async def test_changed_at_never_decreases(self, store, token, clock):
        await store.pause("meltdown", Actor.system(), token)
        paused_at = (await store.current_state()).changed_at

        clock.advance(-3600)
        state = await store.resume(Actor.admin("42"), token)

        assert state.changed_at >= paused_at

    @pytest.mark.asyncio
    async def test_changed_at_follows_clock(self, store, token, clock):
        clock.advance(minutes=5)

        await store.pause("meltdown", Actor.system(), token)

        assert (await store.current_state()).changed_at == clock.now()

    @pytest.mark.asyncio
    async def test_version_increments_on_every_write(self, store, token):
        await store.pause("a", Actor.system(), token)
        await store.pause("b", Actor.admin("42"), token)
        await store.resume(Actor.admin("42"), token)

        assert (await store.current_state()).version == 3

    @pytest.mark.asyncio
    async def test_initial_record_supplied(self, clock, token):
        paused = TradingState(
            enabled=False,
            reason="restored",
            changed_at=clock.now() - timedelta(hours=1),
            changed_by=Actor.admin("42"),
            privilege=PrivilegeLevel.ADMIN,
            version=7,
        )
        store = TradingStateStore(
            persistence=InMemoryTradingStatePersistence(initial=paused, clock=clock),
            clock=clock,
        )

        state = await store.resume(Actor.admin("42"), token)

        assert state.enabled is True
        assert state.version == 8

"""
Meltdown Controller - Trading State Store.

============================================================
PURPOSE
============================================================
Owns the single, versioned trading-enabled record.

All writes go through pause() / resume(), both of which
require a LockToken from the mutual-exclusion gate.

============================================================
TRANSITION PROTOCOL
============================================================
pause(reason, actor):
- enabled  -> disabled                      PAUSED
- disabled, actor privilege >= recorded     REASON_UPDATED
- disabled, actor privilege <  recorded     UNCHANGED

resume(actor):
- enabled                                   no-op
- disabled, actor privilege >= recorded     enabled
- disabled, actor privilege <  recorded     PermissionDeniedError

Writes are compare-and-set on the record version. A lost
race or storage failure raises PersistenceError and the
previous state stays authoritative.

============================================================
"""

import logging
from typing import Optional

from .clock import ClockProtocol, SystemClock
from .config import ResumePolicyConfig
from .interfaces import AdminIdentity, StaticAdminIdentity, TradingStatePersistence
from .types import (
    Actor,
    GateError,
    LockToken,
    PauseOutcome,
    PermissionDeniedError,
    PersistenceError,
    PrivilegeLevel,
    TradingState,
)


logger = logging.getLogger(__name__)


class TradingStateStore:
    """
    Single source of truth for the trading-enabled flag.
    """

    def __init__(
        self,
        persistence: TradingStatePersistence,
        admin_identity: Optional[AdminIdentity] = None,
        policy: Optional[ResumePolicyConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize store.

        Args:
            persistence: Durable record storage
            admin_identity: Privilege resolution for admin actors
            policy: Pause/resume precedence policy
            clock: Time source
        """
        self._persistence = persistence
        self._admin_identity = admin_identity or StaticAdminIdentity()
        self._policy = policy or ResumePolicyConfig()
        self._clock = clock or SystemClock()

    # --------------------------------------------------------
    # READ
    # --------------------------------------------------------

    async def current_state(self) -> TradingState:
        """Read the trading state. No gate needed."""
        return await self._load()

    async def is_trading_enabled(self) -> bool:
        state = await self._load()
        return state.enabled

    # --------------------------------------------------------
    # TRANSITIONS
    # --------------------------------------------------------

    async def pause(
        self,
        reason: str,
        actor: Actor,
        token: Optional[LockToken],
    ) -> PauseOutcome:
        """
        Disable trading.

        Args:
            reason: Why trading is paused
            actor: Who is pausing
            token: Gate token proving exclusive access

        Returns:
            PauseOutcome

        Raises:
            GateError: If no token is given
            PermissionDeniedError: If the actor has no privilege at all
            PersistenceError: On storage failure or lost race
        """
        self._require_token(token, "pause")

        current = await self._load()
        privilege = await self._privilege_of(actor)

        if privilege <= PrivilegeLevel.NONE:
            raise PermissionDeniedError(actor, PrivilegeLevel.SYSTEM, privilege)

        if current.is_paused:
            if self._policy.enforce_admin_precedence and privilege < current.privilege:
                logger.warning(
                    f"Pause by {actor} ignored: trading already paused by "
                    f"{current.changed_by} ({current.privilege.name}): {current.reason}"
                )
                return PauseOutcome.UNCHANGED

            outcome = PauseOutcome.REASON_UPDATED
        else:
            outcome = PauseOutcome.PAUSED

        new_state = TradingState(
            enabled=False,
            reason=reason,
            changed_at=self._next_timestamp(current),
            changed_by=actor,
            privilege=privilege,
            version=current.version + 1,
        )
        await self._write(current, new_state)

        if outcome == PauseOutcome.PAUSED:
            logger.critical(f"TRADING PAUSED by {actor}: {reason}")
        else:
            logger.warning(f"Pause reason updated by {actor}: {reason}")

        return outcome

    async def resume(
        self,
        actor: Actor,
        token: Optional[LockToken],
    ) -> TradingState:
        """
        Enable trading.

        Args:
            actor: Who is resuming
            token: Gate token proving exclusive access

        Returns:
            The resulting trading state

        Raises:
            GateError: If no token is given
            PermissionDeniedError: If the actor's privilege is below the
                privilege recorded on the pause
            PersistenceError: On storage failure or lost race
        """
        self._require_token(token, "resume")

        current = await self._load()

        if current.enabled:
            logger.info(f"Resume by {actor}: trading already enabled")
            return current

        privilege = await self._privilege_of(actor)

        if self._policy.enforce_admin_precedence and privilege < current.privilege:
            logger.warning(
                f"Resume by {actor} denied: pause held by {current.changed_by} "
                f"({current.privilege.name})"
            )
            raise PermissionDeniedError(actor, current.privilege, privilege)

        new_state = TradingState(
            enabled=True,
            reason=f"Resumed by {actor}",
            changed_at=self._next_timestamp(current),
            changed_by=actor,
            privilege=privilege,
            version=current.version + 1,
        )
        await self._write(current, new_state)

        logger.warning(f"TRADING RESUMED by {actor} (was paused: {current.reason})")
        return new_state

    # --------------------------------------------------------
    # INTERNALS
    # --------------------------------------------------------

    def _require_token(self, token: Optional[LockToken], operation: str) -> None:
        if token is None:
            raise GateError(f"{operation} requires holding the mutual-exclusion gate")

    async def _privilege_of(self, actor: Actor) -> PrivilegeLevel:
        if not actor.is_admin:
            return PrivilegeLevel.SYSTEM
        return PrivilegeLevel(await self._admin_identity.privilege_of(actor))

    def _next_timestamp(self, current: TradingState):
        # changed_at never moves backwards, even if the wall clock does
        return max(self._clock.now(), current.changed_at)

    async def _load(self) -> TradingState:
        try:
            return await self._persistence.load()
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to load trading state: {e}") from e

    async def _write(self, current: TradingState, new_state: TradingState) -> None:
        try:
            written = await self._persistence.compare_and_set(current.version, new_state)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to write trading state: {e}") from e

        if not written:
            raise PersistenceError(
                f"Trading state changed concurrently (expected version {current.version})"
            )

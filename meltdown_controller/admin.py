"""
Meltdown Controller - Admin Override.

============================================================
PURPOSE
============================================================
Manual force-pause and force-resume.

Both entry points take the same gate as the control loop,
waiting briefly for an in-flight cycle rather than racing it.

Failures are returned in OverrideResult, never raised:
- GateBusyError:          cycle still running after the timeout
- PermissionDeniedError:  privilege below the recorded pause
- PersistenceError:       state could not be written

Who may call these is decided upstream. Only the pause/resume
precedence rule is enforced here (through the state store).

============================================================
"""

import logging
from typing import Optional

from .alerting import AlertingService
from .gate import MutualExclusionGate
from .state_store import TradingStateStore
from .types import (
    Actor,
    MeltdownControllerError,
    OverrideResult,
    PauseOutcome,
)


logger = logging.getLogger(__name__)


class AdminOverride:
    """
    Manual trading pause/resume.
    """

    def __init__(
        self,
        store: TradingStateStore,
        gate: MutualExclusionGate,
        alerting: Optional[AlertingService] = None,
        gate_timeout_seconds: float = 5.0,
    ):
        """
        Initialize admin override.

        Args:
            store: Trading state store
            gate: Gate shared with the control loop
            alerting: Admin alerting (optional)
            gate_timeout_seconds: How long to wait for an in-flight cycle
        """
        self._store = store
        self._gate = gate
        self._alerting = alerting
        self._gate_timeout = gate_timeout_seconds

    async def force_pause(self, reason: str, actor: Actor) -> OverrideResult:
        """
        Pause trading manually.

        Args:
            reason: Why trading is paused
            actor: Admin performing the pause

        Returns:
            OverrideResult with the resulting state
        """
        logger.info(f"Admin action: force_pause by {actor}, reason={reason!r}")

        try:
            async with self._gate.hold(
                timeout=self._gate_timeout,
                holder=f"admin-pause-{actor}",
            ) as token:
                outcome = await self._store.pause(reason=reason, actor=actor, token=token)
                state = await self._store.current_state()

        except MeltdownControllerError as e:
            logger.warning(f"Admin pause by {actor} failed: {e}")
            return OverrideResult(success=False, error=e)

        if outcome == PauseOutcome.UNCHANGED:
            logger.info(f"Admin pause by {actor}: already paused by {state.changed_by}")
        elif self._alerting is not None:
            await self._alerting.alert_pause(reason, actor)

        return OverrideResult(success=True, state=state)

    async def force_resume(self, actor: Actor) -> OverrideResult:
        """
        Resume trading manually.

        Args:
            actor: Admin performing the resume

        Returns:
            OverrideResult with the resulting state
        """
        logger.info(f"Admin action: force_resume by {actor}")

        try:
            async with self._gate.hold(
                timeout=self._gate_timeout,
                holder=f"admin-resume-{actor}",
            ) as token:
                before = await self._store.current_state()
                state = await self._store.resume(actor=actor, token=token)

        except MeltdownControllerError as e:
            logger.warning(f"Admin resume by {actor} failed: {e}")
            return OverrideResult(success=False, error=e)

        if before.is_paused and self._alerting is not None:
            await self._alerting.alert_resume(state)

        return OverrideResult(success=True, state=state)

"""
Meltdown Controller - Mutual Exclusion Gate.

============================================================
PURPOSE
============================================================
A named, cluster-wide exclusive lock. At most one meltdown
cycle (or manual pause/resume) holds it at any instant.

RULES:
- acquire(timeout=0) never queues: Busy is returned at once
- A skipped cycle is acceptable, a backlog is not
- hold() releases on every exit path (success, error,
  cancellation)

BACKENDS:
- InProcessGate:         single-instance deployments, tests
- PostgresAdvisoryGate:  pg_try_advisory_lock on a dedicated
                         connection held for the token lifetime

============================================================
"""

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from .clock import ClockProtocol, SystemClock
from .config import GateBackend, GateConfig
from .types import ConfigurationError, GateBusyError, GateError, LockToken


logger = logging.getLogger(__name__)


# ============================================================
# GATE INTERFACE
# ============================================================

class MutualExclusionGate(ABC):
    """
    Abstract exclusive lock keyed by a fixed identifier.
    """

    def __init__(self, key: int, clock: Optional[ClockProtocol] = None):
        self._key = key
        self._clock = clock or SystemClock()

    @property
    def key(self) -> int:
        return self._key

    @abstractmethod
    async def acquire(
        self,
        timeout: float = 0.0,
        holder: str = "",
    ) -> Optional[LockToken]:
        """
        Try to take the gate.

        Args:
            timeout: Seconds to wait for a busy gate (0 = do not wait)
            holder: Label of the caller, for logs

        Returns:
            LockToken, or None when the gate is busy
        """
        pass

    @abstractmethod
    async def release(self, token: LockToken) -> None:
        """
        Release the gate.

        Raises:
            GateError: If the token does not own the gate
        """
        pass

    @asynccontextmanager
    async def hold(
        self,
        timeout: float = 0.0,
        holder: str = "",
    ) -> AsyncIterator[LockToken]:
        """
        Scoped acquisition.

        Raises:
            GateBusyError: If the gate could not be taken in time
        """
        token = await self.acquire(timeout=timeout, holder=holder)
        if token is None:
            raise GateBusyError(self._key, holder)

        try:
            yield token
        finally:
            try:
                await self.release(token)
            except Exception as e:
                logger.error(
                    f"Failed to release gate {self._key} held by {token.holder}: {e}",
                    exc_info=True,
                )

    def _new_token(self, holder: str) -> LockToken:
        return LockToken(
            gate_key=self._key,
            token_id=uuid.uuid4().hex,
            holder=holder or "anonymous",
            acquired_at=self._clock.now(),
        )


# ============================================================
# IN-PROCESS GATE
# ============================================================

class InProcessGate(MutualExclusionGate):
    """
    Gate for a single process running on one event loop.

    Taking the gate involves no await between the check and the
    assignment, so concurrent acquirers cannot both succeed.
    """

    def __init__(self, key: int = 12345, clock: Optional[ClockProtocol] = None):
        super().__init__(key, clock)
        self._token: Optional[LockToken] = None
        self._free = asyncio.Event()
        self._free.set()

    @property
    def holder(self) -> Optional[LockToken]:
        return self._token

    def is_held(self) -> bool:
        return self._token is not None

    async def acquire(
        self,
        timeout: float = 0.0,
        holder: str = "",
    ) -> Optional[LockToken]:
        deadline = time.monotonic() + max(timeout, 0.0)

        while self._token is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.debug(
                    f"Gate {self._key} busy (held by {self._token.holder}), "
                    f"{holder or 'caller'} not admitted"
                )
                return None
            try:
                await asyncio.wait_for(self._free.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return None

        token = self._new_token(holder)
        self._token = token
        self._free.clear()
        logger.debug(f"Gate {self._key} acquired by {token.holder}")
        return token

    async def release(self, token: LockToken) -> None:
        if self._token is None or self._token.token_id != token.token_id:
            raise GateError(
                f"Token {token.token_id} held by {token.holder} does not own gate {self._key}"
            )
        self._token = None
        self._free.set()
        logger.debug(f"Gate {self._key} released by {token.holder}")


# ============================================================
# POSTGRES ADVISORY GATE
# ============================================================

class PostgresAdvisoryGate(MutualExclusionGate):
    """
    Cluster-wide gate backed by a Postgres session advisory lock.

    Each token owns one database connection. The lock lives as
    long as that connection's session, so the connection is
    invalidated if the explicit unlock fails.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        key: int = 12345,
        poll_interval_seconds: float = 0.1,
        clock: Optional[ClockProtocol] = None,
    ):
        super().__init__(key, clock)
        self._engine = engine
        self._poll_interval = poll_interval_seconds
        self._connections: Dict[str, AsyncConnection] = {}

    async def acquire(
        self,
        timeout: float = 0.0,
        holder: str = "",
    ) -> Optional[LockToken]:
        deadline = time.monotonic() + max(timeout, 0.0)

        try:
            conn = await self._engine.connect()
        except SQLAlchemyError as e:
            raise GateError(f"Cannot connect for gate {self._key}: {e}") from e

        try:
            while True:
                result = await conn.execute(
                    text("SELECT pg_try_advisory_lock(:key)"),
                    {"key": self._key},
                )
                if result.scalar():
                    break

                if time.monotonic() >= deadline:
                    await conn.close()
                    logger.info(
                        f"Advisory lock {self._key} busy, {holder or 'caller'} not admitted"
                    )
                    return None

                await asyncio.sleep(self._poll_interval)

        except SQLAlchemyError as e:
            await conn.invalidate()
            raise GateError(f"Advisory lock {self._key} query failed: {e}") from e
        except BaseException:
            await conn.invalidate()
            raise

        token = self._new_token(holder)
        self._connections[token.token_id] = conn
        logger.debug(f"Advisory lock {self._key} acquired by {token.holder}")
        return token

    async def release(self, token: LockToken) -> None:
        conn = self._connections.pop(token.token_id, None)
        if conn is None:
            raise GateError(
                f"Token {token.token_id} held by {token.holder} does not own gate {self._key}"
            )

        try:
            await conn.execute(
                text("SELECT pg_advisory_unlock(:key)"),
                {"key": self._key},
            )
            await conn.close()
        except SQLAlchemyError as e:
            # Dropping the session releases its advisory locks
            logger.error(f"Advisory unlock {self._key} failed, invalidating connection: {e}")
            await conn.invalidate()
        else:
            logger.debug(f"Advisory lock {self._key} released by {token.holder}")


# ============================================================
# FACTORY
# ============================================================

def create_gate(
    config: GateConfig,
    engine: Optional[AsyncEngine] = None,
    clock: Optional[ClockProtocol] = None,
) -> MutualExclusionGate:
    """
    Create the gate configured for this deployment.

    Raises:
        ConfigurationError: If the postgres backend has no engine
    """
    if config.backend == GateBackend.POSTGRES:
        if engine is None:
            raise ConfigurationError("postgres gate backend needs a database engine")
        return PostgresAdvisoryGate(
            engine=engine,
            key=config.key,
            poll_interval_seconds=config.poll_interval_seconds,
            clock=clock,
        )

    return InProcessGate(key=config.key, clock=clock)

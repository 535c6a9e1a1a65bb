"""
Engine Health
=============

Persisted circuit breaker per engine component.

- Every error increments the error counter. At ``circuit_error_threshold``
  errors the circuit opens; below that the component is degraded.
- While open, the component is skipped until ``circuit_cooldown_seconds``
  have passed; then one trial run is allowed.
- ``circuit_recovery_successes`` consecutive successes reset the component
  to healthy.
"""

import logging
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ruleforge.config import EngineConfig
from ruleforge.db.models import EngineHealthModel, utcnow
from ruleforge.errors import InvariantViolation

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CIRCUIT_OPEN = "circuit_open"


class EngineHealth:
    """Tracks component health and gates execution through the circuit breaker."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], config: Optional[EngineConfig] = None):
        self.session_maker = session_maker
        self.config = config or EngineConfig()

    async def _locked_row(self, db: AsyncSession, component: str) -> EngineHealthModel:
        # The insert is the first statement, so the transaction holds the write lock
        await db.execute(
            sqlite_insert(EngineHealthModel)
            .values(
                component=component,
                status=HealthStatus.HEALTHY.value,
                error_count=0,
                success_count=0,
                consecutive_successes=0,
            )
            .on_conflict_do_nothing(index_elements=["component"])
        )
        return await db.get(EngineHealthModel, component, populate_existing=True)

    async def record_error(self, component: str, error: str) -> HealthStatus:
        now = utcnow()
        async with self.session_maker() as db:
            async with db.begin():
                row = await self._locked_row(db, component)
                row.error_count += 1
                row.consecutive_successes = 0
                row.last_error = error[:2000]
                row.last_error_at = now
                if row.error_count >= self.config.circuit_error_threshold:
                    if row.status != HealthStatus.CIRCUIT_OPEN.value:
                        logger.warning("Circuit opened for %s after %d errors", component, row.error_count)
                    row.status = HealthStatus.CIRCUIT_OPEN.value
                    # A failed trial run starts a new cooldown
                    row.circuit_opened_at = now
                else:
                    row.status = HealthStatus.DEGRADED.value
                status = HealthStatus(row.status)
        return status

    async def record_success(self, component: str) -> HealthStatus:
        now = utcnow()
        async with self.session_maker() as db:
            async with db.begin():
                row = await self._locked_row(db, component)
                row.success_count += 1
                row.consecutive_successes += 1
                row.last_success_at = now
                if row.status == HealthStatus.CIRCUIT_OPEN.value:
                    row.status = HealthStatus.DEGRADED.value
                    row.circuit_opened_at = None
                if (row.status == HealthStatus.DEGRADED.value
                        and row.consecutive_successes >= self.config.circuit_recovery_successes):
                    row.status = HealthStatus.HEALTHY.value
                    row.error_count = 0
                    logger.info("Component %s recovered", component)
                status = HealthStatus(row.status)
        return status

    async def is_open(self, component: str) -> bool:
        """True while the circuit is open and the cooldown has not elapsed."""
        async with self.session_maker() as db:
            row = await db.get(EngineHealthModel, component)
        if row is None or row.status != HealthStatus.CIRCUIT_OPEN.value:
            return False
        if row.circuit_opened_at is None:
            return False
        cooldown = timedelta(seconds=self.config.circuit_cooldown_seconds)
        return utcnow() - row.circuit_opened_at < cooldown

    async def safe_execute(
        self,
        component: str,
        fn: Callable[[], Awaitable[Any]],
        fallback: Any = None,
    ) -> Any:
        """
        Run ``fn`` through the circuit breaker.

        Returns ``fallback`` when the circuit is open or ``fn`` fails. Invariant
        violations are recorded and re-raised.
        """
        if await self.is_open(component):
            logger.info("Circuit open for %s, skipping", component)
            return fallback

        try:
            result = await fn()
        except InvariantViolation as e:
            await self.record_error(component, str(e))
            raise
        except Exception as e:
            logger.exception("Component %s failed", component)
            await self.record_error(component, f"{type(e).__name__}: {e}")
            return fallback

        await self.record_success(component)
        return result

    async def get_component(self, component: str) -> Optional[dict]:
        async with self.session_maker() as db:
            row = await db.get(EngineHealthModel, component)
            return self._to_dict(row) if row else None

    async def summary(self) -> dict:
        """Overall status: healthy, degraded, or critical when any circuit is open."""
        async with self.session_maker() as db:
            rows = (await db.execute(
                select(EngineHealthModel).order_by(EngineHealthModel.component)
            )).scalars().all()
            components = [self._to_dict(r) for r in rows]

        unhealthy = [c for c in components if c["status"] != HealthStatus.HEALTHY.value]
        if not unhealthy:
            overall = "healthy"
        elif any(c["status"] == HealthStatus.CIRCUIT_OPEN.value for c in unhealthy):
            overall = "critical"
        else:
            overall = "degraded"
        return {"overall": overall, "components": components, "unhealthy_count": len(unhealthy)}

    @staticmethod
    def _to_dict(row: EngineHealthModel) -> dict:
        return {
            "component": row.component,
            "status": row.status,
            "error_count": row.error_count,
            "success_count": row.success_count,
            "consecutive_successes": row.consecutive_successes,
            "last_error": row.last_error,
            "last_error_at": row.last_error_at.isoformat() if row.last_error_at else None,
            "last_success_at": row.last_success_at.isoformat() if row.last_success_at else None,
            "circuit_opened_at": row.circuit_opened_at.isoformat() if row.circuit_opened_at else None,
        }

"""
Health checks for readiness and liveness checks.

Only the database decides readiness. Abandoned side effects and missing
gateway credentials degrade the report but never take the service out of
rotation: payments from the remaining channels must still be accepted.
"""
from typing import Any, Dict, Mapping, Optional

import structlog
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.database.connection import get_session_factory
from order_payments.database.models import SideEffectDispatch

logger = structlog.get_logger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"


class HealthCheckError(Exception):
    """Raised when a required dependency is unreachable."""

    pass


class HealthCheck:
    """
    Health check service.

    Args:
        session_factory: Session factory (the global one if omitted)
        channels: Gateway name to "credentials present" flag
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        channels: Optional[Mapping[str, bool]] = None,
    ) -> None:
        self._session_factory = session_factory
        self.channels = dict(channels or {})

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def check_database(self) -> Dict[str, Any]:
        """
        Raises:
            HealthCheckError: If the database cannot answer ``SELECT 1``
        """
        try:
            async with self.session_factory() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e
        return {"status": HEALTHY}

    async def check_dispatch_backlog(self) -> Dict[str, Any]:
        """Count side effects by state; abandoned ones need an operator."""
        async with self.session_factory() as db:
            rows = await db.execute(
                select(SideEffectDispatch.state, func.count(SideEffectDispatch.id)).group_by(
                    SideEffectDispatch.state
                )
            )
            counts = {state: count for state, count in rows.all()}

        abandoned = counts.get("abandoned", 0)
        return {
            "status": DEGRADED if abandoned else HEALTHY,
            "abandoned": abandoned,
            "pending": counts.get("pending", 0) + counts.get("failed", 0),
        }

    def check_channels(self) -> Dict[str, Any]:
        missing = sorted(name for name, configured in self.channels.items() if not configured)
        return {
            "status": DEGRADED if missing else HEALTHY,
            "configured": sorted(name for name, configured in self.channels.items() if configured),
            "missing": missing,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run every check.

        Returns:
            Dict[str, Any]: ``unhealthy`` if the database is down, ``degraded``
            if any other check reports a problem, else ``healthy``
        """
        checks: Dict[str, Any] = {}
        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {"status": UNHEALTHY, "error": str(e)}
            return {"status": UNHEALTHY, "checks": checks}

        checks["dispatch"] = await self.check_dispatch_backlog()
        checks["channels"] = self.check_channels()

        degraded = any(check["status"] != HEALTHY for check in checks.values())
        return {"status": DEGRADED if degraded else HEALTHY, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """The process is up; no dependency is touched."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        try:
            database = await self.check_database()
        except HealthCheckError as e:
            return {"status": UNHEALTHY, "checks": {"database": {"error": str(e)}}}
        return {"status": HEALTHY, "checks": {"database": database}}

"""
Health checks for the worker process.

Checks:
- Database connectivity
- Job store (Redis) connectivity, when the Redis store is configured
- Queue health (failed/active job counts)
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_verification.database.connection import get_session_factory
from payment_verification.workers.job_store import RedisJobStore
from payment_verification.workers.orchestrator import JobOrchestrator

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for the worker's dependencies.

    Provides:
    - Database connectivity check
    - Job store connectivity check
    - Queue health check
    - Overall system health status
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.orchestrator = orchestrator
        self._session_factory = session_factory

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self._session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

    async def check_job_store(self) -> Dict[str, Any]:
        """
        Check the job store.

        Raises:
            HealthCheckError: If the Redis job store cannot be reached
        """
        store = self.orchestrator.store
        if not isinstance(store, RedisJobStore):
            return {
                "status": "healthy",
                "service": "job_store",
                "message": "In-memory job store",
            }

        try:
            await store.ping()
            return {
                "status": "healthy",
                "service": "job_store",
                "message": "Redis connection successful",
            }
        except Exception as e:
            logger.error("job_store_health_check_failed", error=str(e))
            raise HealthCheckError(f"Job store health check failed: {str(e)}") from e

    async def check_queues(self) -> Dict[str, Any]:
        """
        Check queue health.

        Raises:
            HealthCheckError: If any queue is unhealthy
        """
        health = await self.orchestrator.check_queue_health()
        if not health["is_healthy"]:
            errors = [q["error"] for q in health["queues"] if not q["is_healthy"]]
            logger.error("queue_health_check_failed", errors=errors)
            raise HealthCheckError(f"Queue health check failed: {'; '.join(errors)}")

        return {
            "status": "healthy",
            "service": "queues",
            "summary": health["summary"],
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("job_store", self.check_job_store),
            ("queues", self.check_queues),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {
                    "status": "unhealthy",
                    "service": name,
                    "error": str(e),
                }
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Simple check that the process is running; no dependencies."""
        return {
            "status": "alive",
            "message": "Workers are running",
        }

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()

"""
Worker process entry point.

Wires settings, logging, the database, the payment service and the job
orchestrator, then serves the three queues until SIGINT or SIGTERM.
"""
import asyncio
import signal
from dataclasses import dataclass, replace
from typing import Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_verification.config import Settings, get_settings
from payment_verification.core.extraction import TextExtractor
from payment_verification.core.payment_service import PaymentService
from payment_verification.core.receipt_verifier import ReceiptVerifier
from payment_verification.database.connection import (
    connect_with_retry,
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from payment_verification.database.repositories import (
    OrderRepository,
    PaymentRepository,
    ReceiptRepository,
)
from payment_verification.integrations.messaging import MessageSender
from payment_verification.monitoring.health import HealthCheck
from payment_verification.monitoring.logging import setup_logging
from payment_verification.workers.job_store import InMemoryJobStore, JobStore, RedisJobStore
from payment_verification.workers.orchestrator import (
    DEFAULT_QUEUE_CONFIGS,
    MESSAGE_RETRY,
    PAYMENT_VERIFICATION,
    RECEIPT_GENERATION,
    JobOrchestrator,
    QueueConfig,
)
from payment_verification.workers.processors import PaymentJobProcessors

logger = structlog.get_logger(__name__)


@dataclass
class WorkerApp:
    settings: Settings
    orchestrator: JobOrchestrator
    payment_service: PaymentService
    processors: PaymentJobProcessors
    extractor: TextExtractor
    message_sender: MessageSender
    health: HealthCheck

    async def close(self) -> None:
        await self.orchestrator.stop()
        await self.extractor.close()
        await self.message_sender.close()


def queue_configs_from_settings(settings: Settings) -> Dict[str, QueueConfig]:
    concurrency = {
        MESSAGE_RETRY: settings.message_retry_concurrency,
        PAYMENT_VERIFICATION: settings.payment_verification_concurrency,
        RECEIPT_GENERATION: settings.receipt_generation_concurrency,
    }
    return {
        name: replace(config, concurrency=concurrency[name])
        for name, config in DEFAULT_QUEUE_CONFIGS.items()
    }


def create_job_store(settings: Settings) -> JobStore:
    if settings.job_store == "redis":
        return RedisJobStore(settings.redis_url, prefix=settings.job_store_prefix)
    return InMemoryJobStore()


def build_worker_app(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    store: Optional[JobStore] = None,
    extractor: Optional[TextExtractor] = None,
    message_sender: Optional[MessageSender] = None,
) -> WorkerApp:
    """Assemble the service graph; nothing is started."""
    payment_service = PaymentService(
        orders=OrderRepository(session_factory),
        payments=PaymentRepository(session_factory),
        receipts=ReceiptRepository(session_factory),
        config=settings.payment_config(),
    )
    extractor = extractor or TextExtractor(settings)
    message_sender = message_sender or MessageSender.from_settings(settings)
    orchestrator = JobOrchestrator(
        configs=queue_configs_from_settings(settings),
        store=store or create_job_store(settings),
    )
    processors = PaymentJobProcessors(
        payment_service=payment_service,
        receipt_verifier=ReceiptVerifier(extractor),
        message_sender=message_sender,
        orchestrator=orchestrator,
    )
    processors.register()

    return WorkerApp(
        settings=settings,
        orchestrator=orchestrator,
        payment_service=payment_service,
        processors=processors,
        extractor=extractor,
        message_sender=message_sender,
        health=HealthCheck(orchestrator, session_factory),
    )


async def run_workers(settings: Optional[Settings] = None) -> None:
    """Run the queues until a shutdown signal arrives."""
    settings = settings or get_settings()
    setup_logging(settings)
    logger.info("payment_workers_starting", app_env=settings.app_env)

    engine = await connect_with_retry(create_engine_from_settings(settings), settings)
    await init_db(engine)

    app = build_worker_app(settings, create_session_factory(engine))

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _request_shutdown(sig: signal.Signals) -> None:
        logger.info("payment_workers_shutdown_signal_received", signal=sig.name)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _request_shutdown, sig)

    try:
        await app.orchestrator.start()
        await stop_event.wait()
    except Exception as e:
        logger.error("payment_workers_error", error=str(e))
        raise
    finally:
        await app.close()
        await engine.dispose()
        logger.info("payment_workers_stopped")


def main() -> None:
    asyncio.run(run_workers())


if __name__ == "__main__":
    main()

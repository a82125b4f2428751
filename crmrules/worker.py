"""Worker process entry point: mutation consumer and scheduled rule runner."""

import asyncio
import signal

from crmrules.core.config import get_settings
from crmrules.core.logging import get_logger, setup_logging
from crmrules.engine.processor import get_rules_processor
from crmrules.messaging.consumer import RabbitMQConsumer
from crmrules.messaging.handler import handle_event
from crmrules.models.entity import EntityType
from crmrules.observability.tracing import TraceContext
from crmrules.storage.redis_client import close_redis_pool, init_redis_pool

logger = get_logger(__name__)


class ScheduledRuleRunner:
    """Periodically evaluates SCHEDULE rules for every entity type."""

    def __init__(self, interval_seconds: int):
        self._interval = interval_seconds
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        logger.info("Scheduled rule runner started", interval=self._interval)
        while not self._stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> None:
        """Sweep all entity types once."""
        processor = get_rules_processor()
        for entity_type in EntityType:
            with TraceContext():
                try:
                    await processor.run_scheduled(entity_type)
                except Exception as e:
                    logger.error(
                        "Scheduled run failed",
                        entity_type=entity_type.value,
                        error=str(e),
                        exc_info=True,
                    )

    def stop(self) -> None:
        self._stop_event.set()


class WorkerManager:
    """Manager for coordinating worker processes."""

    def __init__(self):
        """Initialize worker manager."""
        self._settings = get_settings()
        self._consumer: RabbitMQConsumer | None = None
        self._scheduler: ScheduledRuleRunner | None = None

    async def start(self) -> None:
        """Start all worker processes."""
        setup_logging()
        logger.info("Starting worker manager")

        await init_redis_pool()

        self._consumer = RabbitMQConsumer(handle_event)
        self._scheduler = ScheduledRuleRunner(self._settings.schedule_interval_seconds)

        try:
            await asyncio.gather(
                self._run_consumer(),
                self._run_scheduler(),
            )
        finally:
            await self._cleanup()

    async def _run_consumer(self) -> None:
        """Run message consumer."""
        if self._consumer:
            try:
                await self._consumer.start_consuming()
            except asyncio.CancelledError:
                logger.info("Consumer cancelled")
            except Exception as e:
                logger.error("Consumer error", error=str(e), exc_info=True)

    async def _run_scheduler(self) -> None:
        """Run scheduled rule sweeps."""
        if self._scheduler:
            try:
                await self._scheduler.start()
            except asyncio.CancelledError:
                logger.info("Scheduler cancelled")
            except Exception as e:
                logger.error("Scheduler error", error=str(e), exc_info=True)

    async def stop(self) -> None:
        """Signal workers to stop."""
        logger.info("Stopping workers")
        if self._consumer:
            self._consumer.stop()
        if self._scheduler:
            self._scheduler.stop()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        logger.info("Cleaning up resources")
        if self._consumer:
            await self._consumer.disconnect()
        await close_redis_pool()
        logger.info("Cleanup complete")


async def main() -> None:
    """Main entry point for worker process."""
    manager = WorkerManager()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(manager.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    await manager.start()


if __name__ == "__main__":
    asyncio.run(main())

"""Worker process for consuming view events from queue"""
import asyncio
import logging
import signal

from config import LOG_LEVEL
from db import MongoAffinityStore, MongoCatalog, MongoEventStore, connect_db, disconnect_db
from errors import ProcessingError
from messaging import connect_queue, decode_event, disconnect_queue, messagemq
from models import EventInput
from processor import EventProcessor

logging.basicConfig(level=LOG_LEVEL, format='{"time":"%(asctime)s","msg":"%(message)s"}')
logger = logging.getLogger(__name__)


class EventWorker:
    def __init__(self, processor: EventProcessor = None):
        self.processor = processor
        self.running = True
        self.processed = 0
        self.duplicates = 0
        self.failed = 0

    async def process_message(self, message):
        """Process single event message.

        Invalid events are acknowledged and dropped. A ProcessingError
        propagates so the message is rejected to the dead-letter queue.
        """
        async with message.process(requeue=False):
            try:
                event = EventInput(**decode_event(message.body)).to_event()
                if not await self.processor.process(event):
                    self.duplicates += 1
                    return
                self.processed += 1

                if self.processed % 5000 == 0:
                    logger.info(
                        f"Processed: {self.processed}, "
                        f"Duplicates: {self.duplicates}, Failed: {self.failed}"
                    )

            # pydantic, msgpack and our own ValidationError are all ValueErrors
            except (ValueError, TypeError) as e:
                self.failed += 1
                logger.error(f"Invalid event dropped: {e}")
            except ProcessingError as e:
                self.failed += 1
                logger.error(f"Processing error, dead-lettering: {e}")
                raise

    async def start(self):
        """Start worker"""
        await connect_db()
        await connect_queue()
        if self.processor is None:
            self.processor = EventProcessor(MongoEventStore(), MongoCatalog(), MongoAffinityStore())
        await messagemq.events_queue.consume(self.process_message)
        logger.info("Worker started")

        while self.running:
            await asyncio.sleep(1)

    async def stop(self):
        """Stop worker gracefully"""
        self.running = False
        await disconnect_queue()
        await disconnect_db()
        logger.info(
            f"Worker stopped. Processed: {self.processed}, "
            f"Duplicates: {self.duplicates}, Failed: {self.failed}"
        )


async def main():
    worker = EventWorker()
    loop = asyncio.get_running_loop()

    def signal_handler():
        asyncio.create_task(worker.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await worker.start()
    except KeyboardInterrupt:
        await worker.stop()


if __name__ == "__main__":
    asyncio.run(main())

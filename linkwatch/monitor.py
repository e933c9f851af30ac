"""
Live monitor: feeds newly posted messages through the link pipeline.

Messages are queued as they arrive and processed one at a time, but
only once the gate opens. The gate opens when the historical scrape
has finished (or straight away when scraping is disabled) so live
writes never interleave with the backfill.
"""

import asyncio
import logging

from linkwatch.config import Settings
from linkwatch.pipeline import AllowList, LinkPipeline, StoredLink
from linkwatch.scraper import HistoricalScraper
from linkwatch.schemas import IncomingMessage
from linkwatch.storage import LinkStore
from linkwatch.utils import isoformat_z

logger = logging.getLogger(__name__)


class LiveMonitor:

    def __init__(self, pipeline: LinkPipeline, store: LinkStore, settings: Settings):
        self.pipeline = pipeline
        self.store = store
        self.allow_list = AllowList.from_settings(settings)
        self.degraded = settings.degraded
        self.summary_every = settings.SUMMARY_EVERY
        self.queue: asyncio.Queue[IncomingMessage] = asyncio.Queue(maxsize=settings.QUEUE_MAXSIZE)
        self._gate = asyncio.Event()
        self._since_summary = 0

    @property
    def gate_open(self) -> bool:
        return self._gate.is_set()

    def open_gate(self) -> None:
        if not self._gate.is_set():
            logger.info(f"Live monitoring active ({self.queue.qsize()} message(s) queued)")
            self._gate.set()

    def accepts(self, message: IncomingMessage) -> bool:
        """Allow-list and bot filter applied before a message is queued."""
        if message.author.is_bot:
            return False
        return self.allow_list.allows(message)

    async def submit(self, message: IncomingMessage) -> bool:
        """
        Queue a message for processing. Waits while the queue is full.

        Returns:
            False if the message was filtered out
        """
        if not self.accepts(message):
            return False
        await self.queue.put(message)
        return True

    async def activate_after(self, scraper: HistoricalScraper) -> None:
        """Run the historical scrape to completion, then open the gate."""
        try:
            await scraper.run()
        except Exception:
            logger.exception("Historical scrape failed")
        finally:
            if self.degraded:
                self.log_summary()
            self.open_gate()

    async def run(self) -> None:
        """Process queued messages forever, one at a time, once the gate is open."""
        await self._gate.wait()
        while True:
            message = await self.queue.get()
            try:
                await self.handle(message)
            except Exception:
                logger.exception(f"Unhandled error processing message {message.id}")
            finally:
                self.queue.task_done()

    async def handle(self, message: IncomingMessage) -> list[StoredLink]:
        stored = await self.pipeline.process_message(message, source="live")
        if self.degraded and stored:
            self._report(stored)
        return stored

    def _report(self, stored: list[StoredLink]) -> None:
        for record, outcome in stored:
            preview = record.message_content[:100]
            logger.info(
                f"FOUND TWITTER LINK (TEST MODE): {record.url}",
                extra={
                    "outcome": outcome.value,
                    "channel": record.channel_name,
                    "author": record.author_username,
                    "preview": preview,
                },
            )
            self._since_summary += 1
            if self._since_summary >= self.summary_every:
                self.log_summary()

    def log_summary(self) -> None:
        """Log cumulative totals of everything stored so far."""
        self._since_summary = 0
        stats = self.store.stats()
        logger.info(
            f"Link summary: {stats.total_links} links from {stats.authors_count} author(s) "
            f"in {stats.channels_count} channel(s)",
            extra={
                "total_links": stats.total_links,
                "authors_count": stats.authors_count,
                "channels_count": stats.channels_count,
                "oldest_message_ts": isoformat_z(stats.oldest_message_ts),
                "newest_message_ts": isoformat_z(stats.newest_message_ts),
            },
        )

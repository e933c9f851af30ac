"""
Historical scraper: pages backward through each allow-listed channel
from the newest message down to a cutoff date.

Per channel the traversal is strictly sequential. Each page is fetched
with the cursor set to the last processed message, every message is
run through the pipeline in page order (newest first), and the scraper
sleeps between pages to stay under the platform's rate limits. The
first message older than the cutoff ends the channel.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Protocol

from linkwatch.config import Settings
from linkwatch.exceptions import SourceAccessError
from linkwatch.metrics import record_history_page
from linkwatch.pipeline import LinkPipeline
from linkwatch.schemas import ChannelScrapeReport, IncomingMessage, ScrapeStatus

logger = logging.getLogger(__name__)

CUTOFF_FORMATS = ("%Y-%m-%d", "%Y-%m-%d %H:%M:%S")


class MessageSource(Protocol):
    """Paged access to a channel's message history."""

    async def fetch_before(
        self, channel_id: str, before: Optional[str], limit: int
    ) -> list[IncomingMessage]:
        """
        Up to `limit` messages older than `before` (newest if None),
        newest first. Raises SourceAccessError when history is not readable.
        """
        ...

    async def list_channels(self, guild_id: Optional[str]) -> list[str]:
        """Text channel ids to scrape when no channels are allow-listed."""
        ...


def parse_cutoff_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a cutoff date as UTC.

    Accepts YYYY-MM-DD or YYYY-MM-DD HH:MM:SS. Returns None for
    anything else, including an empty value.
    """
    if not value:
        return None
    for fmt in CUTOFF_FORMATS:
        try:
            return datetime.strptime(value.strip(), fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


class HistoricalScraper:
    """Backfills stored links from channel history down to the cutoff date."""

    def __init__(
        self,
        source: MessageSource,
        pipeline: LinkPipeline,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.source = source
        self.pipeline = pipeline
        self.requested = settings.SCRAPE_HISTORY
        self.cutoff = parse_cutoff_date(settings.SCRAPE_CUTOFF_DATE)
        self.cutoff_raw = settings.SCRAPE_CUTOFF_DATE
        self.guild_id = settings.guild_id
        self.channel_ids = settings.channel_ids
        self.batch_size = settings.BATCH_SIZE
        self.batch_delay = settings.BATCH_DELAY_MS / 1000
        self._sleep = sleep

    @property
    def enabled(self) -> bool:
        return self.requested and self.cutoff is not None

    async def run(self) -> list[ChannelScrapeReport]:
        """
        Scrape every allow-listed channel in turn.

        A channel that fails is reported and skipped; it never stops
        the remaining channels.
        """
        if not self.requested:
            logger.info("Historical scraping disabled")
            return []
        if self.cutoff is None:
            logger.warning(
                f"Invalid or missing SCRAPE_CUTOFF_DATE {self.cutoff_raw!r}, "
                "historical scraping disabled (expected YYYY-MM-DD or YYYY-MM-DD HH:MM:SS)"
            )
            return []

        channel_ids = self.channel_ids
        if not channel_ids:
            try:
                channel_ids = await self.source.list_channels(self.guild_id)
            except Exception as e:
                logger.error(f"Failed to list channels for historical scrape: {e}")
                return []

        logger.info(
            f"Starting historical scrape of {len(channel_ids)} channel(s) "
            f"back to {self.cutoff.isoformat()}"
        )
        reports = []
        for channel_id in channel_ids:
            reports.append(await self.scrape_channel(channel_id))

        total_stored = sum(r.stored for r in reports)
        total_processed = sum(r.processed for r in reports)
        logger.info(
            f"Historical scrape complete: {total_processed} messages processed, "
            f"{total_stored} links stored across {len(reports)} channel(s)"
        )
        return reports

    async def scrape_channel(self, channel_id: str) -> ChannelScrapeReport:
        report = ChannelScrapeReport(channel_id=channel_id)
        before: Optional[str] = None
        logger.info(f"Scanning history for channel {channel_id}")

        while True:
            try:
                page = await self.source.fetch_before(channel_id, before, self.batch_size)
            except SourceAccessError as e:
                logger.warning(f"Missing access to history of channel {channel_id}, skipping: {e}")
                record_history_page("forbidden")
                report.status = ScrapeStatus.FORBIDDEN
                return report
            except Exception as e:
                logger.error(f"Failed fetching history of channel {channel_id}, skipping: {e}")
                record_history_page("error")
                report.status = ScrapeStatus.FAILED
                return report

            if not page:
                record_history_page("empty")
                report.status = ScrapeStatus.EXHAUSTED
                logger.info(
                    f"Channel {channel_id} exhausted after {report.pages} page(s), "
                    f"{report.processed} messages, {report.stored} links"
                )
                return report

            record_history_page("ok")
            report.pages += 1
            for message in page:
                if message.created_at < self.cutoff:
                    report.status = ScrapeStatus.BOUNDARY
                    logger.info(
                        f"Reached cutoff in channel {channel_id} at message {message.id}: "
                        f"{report.pages} page(s), {report.processed} messages, {report.stored} links"
                    )
                    return report

                if not message.author.is_bot:
                    stored = await self.pipeline.process_message(message, source="history")
                    report.stored += len(stored)
                report.processed += 1
                report.oldest_message_ts = message.created_at
                before = message.id

            logger.debug(
                f"Channel {channel_id} page {report.pages} done, "
                f"reached {report.oldest_message_ts.isoformat()}"
            )
            await self._sleep(self.batch_delay)

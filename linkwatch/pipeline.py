"""
Link pipeline: extract -> resolve -> build -> upsert, one message at a time.

Shared by the live monitor and the historical scraper.
"""

import logging
from typing import Iterable, NamedTuple, Optional

from linkwatch.builder import build_record
from linkwatch.config import Settings
from linkwatch.exceptions import StorageError
from linkwatch.extractor import extract_links, normalize_status_url
from linkwatch.logging_utils import message_context
from linkwatch.metrics import record_message_processed, record_upsert
from linkwatch.resolver import LinkResolver
from linkwatch.schemas import IncomingMessage, LinkRecord, UpsertOutcome
from linkwatch.storage import LinkStore

logger = logging.getLogger(__name__)


class AllowList:
    """
    Guild/channel filter shared by the live monitor and the scraper.

    An empty guild or channel list accepts everything.
    """

    def __init__(self, guild_id: Optional[str] = None, channel_ids: Iterable[str] = ()):
        self.guild_id = guild_id or None
        self.channel_ids = frozenset(c for c in channel_ids if c)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AllowList":
        return cls(settings.guild_id, settings.channel_ids)

    def allows(self, message: IncomingMessage) -> bool:
        if self.guild_id and (message.guild is None or message.guild.id != self.guild_id):
            return False
        if self.channel_ids and message.channel.id not in self.channel_ids:
            return False
        return True


class StoredLink(NamedTuple):
    record: LinkRecord
    outcome: UpsertOutcome


class LinkPipeline:
    """Runs every link in a message through resolution and storage."""

    def __init__(self, resolver: LinkResolver, store: LinkStore):
        self.resolver = resolver
        self.store = store

    async def process_message(self, message: IncomingMessage, source: str = "live") -> list[StoredLink]:
        """
        Extract, resolve, build and upsert every link in a message.

        A failure on one link is logged and the remaining links are
        still processed.

        Returns:
            One StoredLink per link the store accepted; empty when the
            message holds no links
        """
        links = extract_links(message.content)
        record_message_processed(source, len(links))
        if not links:
            return []

        stored = []
        with message_context(message.id, message.channel.id, source):
            logger.info(
                f"Found {len(links)} Twitter link(s) in #{message.channel.name} "
                f"from {message.author.username}"
            )
            for link in sorted(links):
                try:
                    resolved = normalize_status_url(await self.resolver.resolve(link))
                    record = build_record(message, original_url=link, resolved_url=resolved)
                    outcome = self.store.upsert(record)
                except StorageError as e:
                    logger.error(f"Error saving link {link}: {e}")
                    record_upsert("error")
                    continue
                except Exception:
                    logger.exception(f"Error processing link {link}")
                    record_upsert("error")
                    continue
                record_upsert(outcome.value)
                stored.append(StoredLink(record, outcome))
        return stored

"""
Discord adapter: turns discord.py messages into IncomingMessage,
serves paged channel history to the scraper and forwards live
messages to the monitor.
"""

import asyncio
import logging
from typing import Optional

import discord

from linkwatch.config import Settings
from linkwatch.exceptions import SourceAccessError
from linkwatch.monitor import LiveMonitor
from linkwatch.pipeline import LinkPipeline
from linkwatch.scraper import HistoricalScraper
from linkwatch.schemas import IncomingMessage, MessageAuthor, MessageChannel, MessageGuild

logger = logging.getLogger(__name__)


def to_incoming(message: discord.Message) -> IncomingMessage:
    """Convert a discord.py message. DM channels have no name or guild."""
    guild = message.guild
    author = message.author
    return IncomingMessage(
        id=str(message.id),
        content=message.content or "",
        created_at=message.created_at,
        author=MessageAuthor(
            id=str(author.id),
            username=author.name,
            display_name=author.display_name,
            is_bot=author.bot,
        ),
        channel=MessageChannel(
            id=str(message.channel.id),
            name=getattr(message.channel, "name", None) or "",
        ),
        guild=MessageGuild(id=str(guild.id), name=guild.name or "") if guild else None,
    )


class DiscordMessageSource:
    """MessageSource reading channel history through a discord.py client."""

    def __init__(self, client: discord.Client):
        self.client = client

    async def _channel(self, channel_id: str):
        channel = self.client.get_channel(int(channel_id))
        if channel is None:
            channel = await self.client.fetch_channel(int(channel_id))
        return channel

    async def fetch_before(
        self, channel_id: str, before: Optional[str], limit: int
    ) -> list[IncomingMessage]:
        kwargs = {"limit": limit}
        if before is not None:
            kwargs["before"] = discord.Object(id=int(before))
        try:
            channel = await self._channel(channel_id)
            return [to_incoming(m) async for m in channel.history(**kwargs)]
        except (discord.Forbidden, discord.NotFound) as e:
            raise SourceAccessError(f"channel {channel_id}: {e}") from e

    async def list_channels(self, guild_id: Optional[str]) -> list[str]:
        if guild_id:
            guild = self.client.get_guild(int(guild_id))
            guilds = [guild] if guild else []
        else:
            guilds = list(self.client.guilds)
        return [str(channel.id) for guild in guilds for channel in guild.text_channels]


class LinkWatchClient(discord.Client):
    """
    Discord client that backfills history on first ready, then hands
    live messages to the monitor.
    """

    def __init__(self, monitor: LiveMonitor, pipeline: LinkPipeline, settings: Settings):
        intents = discord.Intents.default()
        intents.guilds = True
        intents.guild_messages = True
        intents.message_content = True
        super().__init__(intents=intents)

        self.monitor = monitor
        self.scraper = HistoricalScraper(DiscordMessageSource(self), pipeline, settings)
        self.guild_id = settings.guild_id
        self.channel_ids = settings.channel_ids
        self._backfill_started = False
        self._tasks: set[asyncio.Task] = set()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def setup_hook(self) -> None:
        self._spawn(self.monitor.run())

    async def on_ready(self) -> None:
        logger.info(f"Bot is ready! Logged in as {self.user}")
        if self.guild_id:
            logger.info(f"Monitoring guild: {self.guild_id}")
        else:
            logger.info("Monitoring all guilds (no GUILD_ID set)")
        if self.channel_ids:
            logger.info(f"Monitoring channels: {', '.join(self.channel_ids)}")
        else:
            logger.info("Monitoring all channels (no CHANNEL_IDs set)")

        # on_ready fires again after every reconnect
        if not self._backfill_started:
            self._backfill_started = True
            self._spawn(self.monitor.activate_after(self.scraper))

    async def on_message(self, message: discord.Message) -> None:
        await self.monitor.submit(to_incoming(message))

    async def on_error(self, event_method: str, *args, **kwargs) -> None:
        logger.exception(f"Discord client error in {event_method}")

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await super().close()

from datetime import datetime
from typing import Optional

from linkwatch.schemas import IncomingMessage, LinkRecord
from linkwatch.utils import utcnow


def build_record(
    message: IncomingMessage,
    original_url: str,
    resolved_url: str,
    found_at: Optional[datetime] = None,
) -> LinkRecord:
    """
    Combine one extracted link, its resolved form and the message
    metadata into a LinkRecord.

    Guild fields are None for messages outside a guild (DMs).
    created_at is left unset; the store assigns it on first insert.
    """
    guild = message.guild
    return LinkRecord(
        url=resolved_url,
        original_url=original_url,
        message_id=message.id,
        channel_id=message.channel.id,
        channel_name=message.channel.name,
        guild_id=guild.id if guild else None,
        guild_name=guild.name if guild else None,
        author_id=message.author.id,
        author_username=message.author.username,
        author_display_name=message.author.display_name,
        message_content=message.content,
        message_timestamp=message.created_at,
        found_at=found_at or utcnow(),
    )

"""
Pydantic schemas for messages, link records and stats.

This module contains:
- Incoming message models delivered by the message source
- The LinkRecord stored by the link stores
- Result models for upserts, top posters and stats
"""

import enum
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from linkwatch.utils import as_utc


# =============================================================================
# Incoming Message Models
# =============================================================================

class MessageAuthor(BaseModel):
    """Author of a chat message."""
    id: str = Field(..., min_length=1, description="Author identifier")
    username: str = Field(..., description="Account username")
    display_name: str = Field(..., description="Display name shown in the guild")
    is_bot: bool = Field(default=False, description="Whether the author is a bot")


class MessageChannel(BaseModel):
    """Channel a message was posted in."""
    id: str = Field(..., min_length=1, description="Channel identifier")
    name: str = Field(default="", description="Channel name")


class MessageGuild(BaseModel):
    """Guild (server) a message was posted in."""
    id: str = Field(..., min_length=1, description="Guild identifier")
    name: str = Field(default="", description="Guild name")


class IncomingMessage(BaseModel):
    """
    A message delivered by the message source, live or historical.

    guild is None for direct messages.
    """
    id: str = Field(..., min_length=1, description="Message identifier")
    content: str = Field(default="", description="Message text")
    created_at: datetime = Field(..., description="When the message was posted")
    author: MessageAuthor
    channel: MessageChannel
    guild: Optional[MessageGuild] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: datetime) -> datetime:
        return as_utc(v)


# =============================================================================
# Link Record
# =============================================================================

class LinkRecord(BaseModel):
    """
    One link found in one message.

    Unique by (message_id, url). Field aliases are the persisted
    column names, which downstream consumers read directly.
    """
    url: str = Field(..., min_length=1, description="Canonical (resolved) URL")
    original_url: str = Field(..., alias="originalUrl", description="URL as written in the message")
    message_id: str = Field(..., alias="messageId")
    channel_id: str = Field(..., alias="channelId")
    channel_name: str = Field(default="", alias="channelName")
    guild_id: Optional[str] = Field(default=None, alias="guildId")
    guild_name: Optional[str] = Field(default=None, alias="guildName")
    author_id: str = Field(..., alias="authorId")
    author_username: str = Field(default="", alias="authorUsername")
    author_display_name: str = Field(default="", alias="authorDisplayName")
    message_content: str = Field(default="", alias="messageContent")
    message_timestamp: datetime = Field(..., alias="messageTimestamp")
    found_at: datetime = Field(..., alias="foundAt")
    created_at: Optional[datetime] = Field(
        default=None,
        alias="createdAt",
        description="Set by the store on first insert",
    )

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
    )

    @field_validator("message_timestamp", "found_at", "created_at")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @property
    def key(self) -> tuple[str, str]:
        return (self.message_id, self.url)


# =============================================================================
# Store Result Models
# =============================================================================

class UpsertOutcome(str, enum.Enum):
    """Effect of a LinkStore.upsert call."""
    INSERTED = "inserted"
    UPDATED = "updated"
    NOOP = "noop"


class TopPoster(BaseModel):
    """An author ranked by number of stored links."""
    author_id: str
    username: str
    count: int = Field(..., ge=0)


class LinkStats(BaseModel):
    """
    Summary of the store contents, served by GET /stats and logged
    periodically in degraded mode.
    """
    total_links: int = Field(..., ge=0)
    authors_count: int = Field(..., ge=0)
    channels_count: int = Field(..., ge=0)
    top_posters: list[TopPoster] = Field(default_factory=list)
    oldest_message_ts: Optional[datetime] = None
    newest_message_ts: Optional[datetime] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Historical Scrape Reports
# =============================================================================

class ScrapeStatus(str, enum.Enum):
    """How a channel's historical traversal ended."""
    EXHAUSTED = "exhausted"
    BOUNDARY = "boundary"
    FORBIDDEN = "forbidden"
    FAILED = "failed"


class ChannelScrapeReport(BaseModel):
    """Progress and result of one channel's historical traversal."""
    channel_id: str
    status: Optional[ScrapeStatus] = None
    pages: int = 0
    processed: int = 0
    stored: int = 0
    oldest_message_ts: Optional[datetime] = None

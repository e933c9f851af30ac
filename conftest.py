"""
Pytest configuration and shared fixtures.

Runs every test in degraded mode with no Discord token and no .env
file, so nothing reaches the network or a real database.
"""

import os
from datetime import datetime, timezone

import pytest

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from linkwatch.config import Settings, get_settings  # noqa: E402
from linkwatch.schemas import (  # noqa: E402
    IncomingMessage,
    LinkRecord,
    MessageAuthor,
    MessageChannel,
    MessageGuild,
)

get_settings.cache_clear()


def make_settings(**overrides) -> Settings:
    """Settings built only from explicit values, ignoring any .env file."""
    values = {"TEST_MODE": True, "LOG_LEVEL": "WARNING", "BATCH_DELAY_MS": 0}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_message(
    message_id: str = "1001",
    content: str = "",
    created_at: datetime = None,
    author_id: str = "u1",
    username: str = "alice",
    channel_id: str = "c1",
    channel_name: str = "links",
    guild_id: str = "g1",
    is_bot: bool = False,
) -> IncomingMessage:
    return IncomingMessage(
        id=message_id,
        content=content,
        created_at=created_at or utc(2024, 1, 5, 12, 0, 0),
        author=MessageAuthor(
            id=author_id,
            username=username,
            display_name=username.title(),
            is_bot=is_bot,
        ),
        channel=MessageChannel(id=channel_id, name=channel_name),
        guild=MessageGuild(id=guild_id, name="Test Guild") if guild_id else None,
    )


def make_record(
    url: str = "https://x.com/foo/status/1",
    message_id: str = "1001",
    author_id: str = "u1",
    username: str = "alice",
    channel_id: str = "c1",
    content: str = "",
    found_at: datetime = None,
    message_timestamp: datetime = None,
) -> LinkRecord:
    return LinkRecord(
        url=url,
        original_url=url,
        message_id=message_id,
        channel_id=channel_id,
        channel_name="links",
        guild_id="g1",
        guild_name="Test Guild",
        author_id=author_id,
        author_username=username,
        author_display_name=username.title(),
        message_content=content or f"look {url}",
        message_timestamp=message_timestamp or utc(2024, 1, 5, 12, 0, 0),
        found_at=found_at or utc(2024, 2, 1, 0, 0, 0),
    )


@pytest.fixture
def settings() -> Settings:
    return make_settings()

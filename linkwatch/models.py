"""
SQLAlchemy ORM model for the links table.

This module contains the database table definition. For the
immutable record passed around the pipeline, see schemas.LinkRecord.
Column names are the persisted contract read by downstream consumers.
"""

from functools import lru_cache

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

DEFAULT_TABLE = "links"


class LinkColumns:
    """
    Columns of a stored link.

    Unique constraint: (messageId, url), enforced by the database so
    concurrent writers cannot create duplicates.
    """
    id = Column(Integer, primary_key=True, autoincrement=True)
    url = Column("url", String, nullable=False)
    original_url = Column("originalUrl", String, nullable=False)
    message_id = Column("messageId", String, nullable=False)
    channel_id = Column("channelId", String, nullable=False, index=True)
    channel_name = Column("channelName", String, nullable=False, default="")
    guild_id = Column("guildId", String, nullable=True)
    guild_name = Column("guildName", String, nullable=True)
    author_id = Column("authorId", String, nullable=False, index=True)
    author_username = Column("authorUsername", String, nullable=False, default="")
    author_display_name = Column("authorDisplayName", String, nullable=False, default="")
    message_content = Column("messageContent", Text, nullable=False, default="")
    message_timestamp = Column("messageTimestamp", DateTime(timezone=True), nullable=False, index=True)
    found_at = Column("foundAt", DateTime(timezone=True), nullable=False, index=True)
    created_at = Column("createdAt", DateTime(timezone=True), nullable=False)


@lru_cache()
def link_model(table_name: str = DEFAULT_TABLE) -> type:
    """
    Return the mapped Link class for a table name.

    Each table name gets its own declarative base, so Link.metadata
    holds exactly one table.
    """
    Base = declarative_base()

    class Link(LinkColumns, Base):
        __tablename__ = table_name
        __table_args__ = (
            UniqueConstraint("messageId", "url", name=f"uq_{table_name}_message_url"),
        )

    return Link

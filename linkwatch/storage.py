import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from sqlalchemy import create_engine, event, func, or_, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from linkwatch.config import Settings
from linkwatch.exceptions import StorageError
from linkwatch.models import link_model
from linkwatch.schemas import LinkRecord, LinkStats, TopPoster, UpsertOutcome
from linkwatch.utils import as_utc

logger = logging.getLogger(__name__)


class LinkStore(ABC):
    """
    Deduplicating store of LinkRecords keyed by (message_id, url).

    Two implementations share identical semantics: SqlLinkStore for a
    real database and MemoryLinkStore for degraded mode. Every "newest
    first" read orders by found_at desc, then message_id desc, then
    url asc.
    """

    def init(self) -> None:
        """Prepare the store for use (create tables, etc.)."""

    @abstractmethod
    def upsert(self, record: LinkRecord) -> UpsertOutcome:
        """
        Insert or refresh a record.

        On first insert created_at is set to the record's found_at. An
        existing record is overwritten except for created_at, unless it
        is already at least as recent as the incoming one (NOOP).

        Raises:
            StorageError: the store could not be written
        """

    @abstractmethod
    def find_by_user(self, author_id: str, limit: int = 10) -> list[LinkRecord]:
        """Records posted by an author, newest first."""

    @abstractmethod
    def find_by_channel(self, channel_id: str, limit: int = 10) -> list[LinkRecord]:
        """Records posted in a channel, newest first."""

    @abstractmethod
    def find_by_date_range(self, start: datetime, end: datetime) -> list[LinkRecord]:
        """Records whose found_at lies in [start, end], newest first."""

    @abstractmethod
    def top_posters(self, limit: int = 10) -> list[TopPoster]:
        """Authors ranked by record count, ties broken by author id."""

    @abstractmethod
    def search(self, query: str, limit: int = 10) -> list[LinkRecord]:
        """Case-insensitive substring match on url or message_content."""

    @abstractmethod
    def all(self) -> list[LinkRecord]:
        """Every record in first-insert order."""

    @abstractmethod
    def count(self) -> int:
        """Number of stored records."""

    @abstractmethod
    def distinct_channels(self) -> list[str]:
        """Sorted ids of channels with at least one record."""

    @abstractmethod
    def distinct_authors(self) -> list[str]:
        """Sorted ids of authors with at least one record."""

    @abstractmethod
    def oldest(self) -> Optional[LinkRecord]:
        """Record with the earliest message_timestamp."""

    @abstractmethod
    def newest(self) -> Optional[LinkRecord]:
        """Record with the latest message_timestamp."""

    @abstractmethod
    def ping(self) -> bool:
        """True if the store can serve reads and writes."""

    def close(self) -> None:
        """Release any held resources."""

    def stats(self, limit: int = 10) -> LinkStats:
        oldest = self.oldest()
        newest = self.newest()
        return LinkStats(
            total_links=self.count(),
            authors_count=len(self.distinct_authors()),
            channels_count=len(self.distinct_channels()),
            top_posters=self.top_posters(limit),
            oldest_message_ts=oldest.message_timestamp if oldest else None,
            newest_message_ts=newest.message_timestamp if newest else None,
        )


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _record_values(record: LinkRecord) -> dict:
    return record.model_dump(exclude={"created_at"})


def _unicode_lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if value is not None else None


def _register_sqlite_functions(dbapi_conn, connection_record) -> None:
    dbapi_conn.create_function("lower", 1, _unicode_lower, deterministic=True)


# =============================================================================
# SQL Store
# =============================================================================

class SqlLinkStore(LinkStore):
    """
    LinkStore backed by SQLAlchemy.

    The (messageId, url) unique constraint lives in the database; an
    insert that loses a race with another writer is retried as an update.
    """

    def __init__(self, settings: Settings):
        url = make_url(settings.DATABASE_URL)
        is_sqlite = url.get_backend_name() == "sqlite"
        if not is_sqlite and not url.database and settings.DATABASE_NAME:
            url = url.set(database=settings.DATABASE_NAME)

        engine_kwargs = {}
        if is_sqlite:
            # check_same_thread=False lets the event loop thread and
            # threadpool handlers share connections
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if url.database in (None, "", ":memory:"):
                engine_kwargs["poolclass"] = StaticPool

        self.model = link_model(settings.LINKS_TABLE)
        self.engine = create_engine(url, echo=False, **engine_kwargs)
        if is_sqlite:
            # SQLite lower() only folds ASCII
            event.listen(self.engine, "connect", _register_sqlite_functions)
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
        )
        logger.debug(f"Link store configured: backend={url.get_backend_name()}, table={settings.LINKS_TABLE}")

    def init(self) -> None:
        """
        Create the links table and its indexes if missing.
        Called once during startup.
        """
        try:
            self.model.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize link store: {e}")
            raise StorageError(f"Failed to initialize link store: {e}") from e
        logger.info("Link store initialized successfully")

    def _to_record(self, row) -> LinkRecord:
        return LinkRecord(**{name: getattr(row, name) for name in LinkRecord.model_fields})

    def _get(self, db, record: LinkRecord):
        Link = self.model
        return (
            db.query(Link)
            .filter(Link.message_id == record.message_id, Link.url == record.url)
            .one_or_none()
        )

    def _newest_first(self, query):
        Link = self.model
        return query.order_by(Link.found_at.desc(), Link.message_id.desc(), Link.url.asc())

    def upsert(self, record: LinkRecord) -> UpsertOutcome:
        values = _record_values(record)
        try:
            with self.SessionLocal() as db:
                row = self._get(db, record)
                if row is None:
                    db.add(self.model(**values, created_at=values["found_at"]))
                    try:
                        db.commit()
                        logger.info(f"New link saved: {record.url} (message {record.message_id})")
                        return UpsertOutcome.INSERTED
                    except IntegrityError:
                        # Another writer inserted the same key first
                        db.rollback()
                        logger.info(f"Concurrent insert detected for {record.url}, updating instead")
                        row = self._get(db, record)
                        if row is None:
                            return UpsertOutcome.NOOP

                if as_utc(row.found_at) >= values["found_at"]:
                    logger.debug(f"Stored link is newer, skipping: {record.url}")
                    return UpsertOutcome.NOOP

                for name, value in values.items():
                    setattr(row, name, value)
                db.commit()
                logger.info(f"Link already stored, refreshed: {record.url} (message {record.message_id})")
                return UpsertOutcome.UPDATED
        except SQLAlchemyError as e:
            logger.error(f"Failed to save link {record.url}: {e}")
            raise StorageError(f"Failed to save link {record.url}: {e}") from e

    def _fetch(self, build) -> list[LinkRecord]:
        try:
            with self.SessionLocal() as db:
                return [self._to_record(row) for row in build(db).all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Link query failed: {e}") from e

    def find_by_user(self, author_id: str, limit: int = 10) -> list[LinkRecord]:
        logger.debug(f"Querying links by author {author_id}, limit={limit}")
        Link = self.model
        return self._fetch(
            lambda db: self._newest_first(db.query(Link).filter(Link.author_id == author_id)).limit(limit)
        )

    def find_by_channel(self, channel_id: str, limit: int = 10) -> list[LinkRecord]:
        logger.debug(f"Querying links by channel {channel_id}, limit={limit}")
        Link = self.model
        return self._fetch(
            lambda db: self._newest_first(db.query(Link).filter(Link.channel_id == channel_id)).limit(limit)
        )

    def find_by_date_range(self, start: datetime, end: datetime) -> list[LinkRecord]:
        Link = self.model
        start, end = as_utc(start), as_utc(end)
        return self._fetch(
            lambda db: self._newest_first(
                db.query(Link).filter(Link.found_at >= start, Link.found_at <= end)
            )
        )

    def search(self, query: str, limit: int = 10) -> list[LinkRecord]:
        Link = self.model
        pattern = f"%{_escape_like(query)}%"
        return self._fetch(
            lambda db: self._newest_first(
                db.query(Link).filter(
                    or_(
                        Link.url.ilike(pattern, escape="\\"),
                        Link.message_content.ilike(pattern, escape="\\"),
                    )
                )
            ).limit(limit)
        )

    def all(self) -> list[LinkRecord]:
        Link = self.model
        return self._fetch(lambda db: db.query(Link).order_by(Link.id.asc()))

    def top_posters(self, limit: int = 10) -> list[TopPoster]:
        Link = self.model
        count_col = func.count(Link.id).label("count")
        try:
            with self.SessionLocal() as db:
                rows = (
                    db.query(
                        Link.author_id,
                        func.max(Link.author_username).label("username"),
                        count_col,
                    )
                    .group_by(Link.author_id)
                    .order_by(count_col.desc(), Link.author_id.asc())
                    .limit(limit)
                    .all()
                )
        except SQLAlchemyError as e:
            raise StorageError(f"Top posters query failed: {e}") from e
        return [
            TopPoster(author_id=row.author_id, username=row.username or "", count=row.count)
            for row in rows
        ]

    def _scalar(self, build):
        try:
            with self.SessionLocal() as db:
                return build(db)
        except SQLAlchemyError as e:
            raise StorageError(f"Link query failed: {e}") from e

    def count(self) -> int:
        Link = self.model
        return self._scalar(lambda db: db.query(func.count(Link.id)).scalar() or 0)

    def distinct_channels(self) -> list[str]:
        Link = self.model
        return self._scalar(
            lambda db: [row[0] for row in db.query(Link.channel_id).distinct().order_by(Link.channel_id)]
        )

    def distinct_authors(self) -> list[str]:
        Link = self.model
        return self._scalar(
            lambda db: [row[0] for row in db.query(Link.author_id).distinct().order_by(Link.author_id)]
        )

    def oldest(self) -> Optional[LinkRecord]:
        Link = self.model
        rows = self._fetch(
            lambda db: db.query(Link).order_by(Link.message_timestamp.asc(), Link.message_id.asc(), Link.url.asc()).limit(1)
        )
        return rows[0] if rows else None

    def newest(self) -> Optional[LinkRecord]:
        Link = self.model
        rows = self._fetch(
            lambda db: db.query(Link).order_by(Link.message_timestamp.desc(), Link.message_id.desc(), Link.url.desc()).limit(1)
        )
        return rows[0] if rows else None

    def ping(self) -> bool:
        """
        Check if the database is reachable and the links table exists.

        Returns:
            True if healthy, False otherwise.
        """
        Link = self.model
        try:
            with self.SessionLocal() as db:
                db.execute(text("SELECT 1"))
                db.query(Link.id).limit(1).all()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Link store health check failed: {e}")
            return False

    def close(self) -> None:
        self.engine.dispose()
        logger.info("Link store connection closed")


# =============================================================================
# In-Memory Store (degraded mode)
# =============================================================================

class MemoryLinkStore(LinkStore):
    """
    LinkStore kept in process memory, used when no database is configured.

    Records live in an insertion-ordered dict keyed by (message_id, url).
    """

    def __init__(self):
        self._records: dict[tuple[str, str], LinkRecord] = {}

    def upsert(self, record: LinkRecord) -> UpsertOutcome:
        existing = self._records.get(record.key)
        if existing is None:
            self._records[record.key] = record.model_copy(update={"created_at": record.found_at})
            logger.info(f"New link saved: {record.url} (message {record.message_id})")
            return UpsertOutcome.INSERTED
        if existing.found_at >= record.found_at:
            logger.debug(f"Stored link is newer, skipping: {record.url}")
            return UpsertOutcome.NOOP
        self._records[record.key] = record.model_copy(update={"created_at": existing.created_at})
        logger.info(f"Link already stored, refreshed: {record.url} (message {record.message_id})")
        return UpsertOutcome.UPDATED

    def _newest_first(self, records) -> list[LinkRecord]:
        by_url = sorted(records, key=lambda r: r.url)
        return sorted(by_url, key=lambda r: (r.found_at, r.message_id), reverse=True)

    def find_by_user(self, author_id: str, limit: int = 10) -> list[LinkRecord]:
        return self._newest_first(r for r in self._records.values() if r.author_id == author_id)[:limit]

    def find_by_channel(self, channel_id: str, limit: int = 10) -> list[LinkRecord]:
        return self._newest_first(r for r in self._records.values() if r.channel_id == channel_id)[:limit]

    def find_by_date_range(self, start: datetime, end: datetime) -> list[LinkRecord]:
        start, end = as_utc(start), as_utc(end)
        return self._newest_first(r for r in self._records.values() if start <= r.found_at <= end)

    def search(self, query: str, limit: int = 10) -> list[LinkRecord]:
        needle = query.lower()
        matches = (
            r for r in self._records.values()
            if needle in r.url.lower() or needle in r.message_content.lower()
        )
        return self._newest_first(matches)[:limit]

    def all(self) -> list[LinkRecord]:
        return list(self._records.values())

    def top_posters(self, limit: int = 10) -> list[TopPoster]:
        counts: dict[str, int] = {}
        usernames: dict[str, str] = {}
        for r in self._records.values():
            counts[r.author_id] = counts.get(r.author_id, 0) + 1
            usernames[r.author_id] = max(usernames.get(r.author_id, ""), r.author_username)
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        return [
            TopPoster(author_id=author_id, username=usernames[author_id], count=count)
            for author_id, count in ranked[:limit]
        ]

    def count(self) -> int:
        return len(self._records)

    def distinct_channels(self) -> list[str]:
        return sorted({r.channel_id for r in self._records.values()})

    def distinct_authors(self) -> list[str]:
        return sorted({r.author_id for r in self._records.values()})

    def oldest(self) -> Optional[LinkRecord]:
        if not self._records:
            return None
        return min(self._records.values(), key=lambda r: (r.message_timestamp, r.message_id, r.url))

    def newest(self) -> Optional[LinkRecord]:
        if not self._records:
            return None
        return max(self._records.values(), key=lambda r: (r.message_timestamp, r.message_id, r.url))

    def ping(self) -> bool:
        return True


def create_store(settings: Settings) -> LinkStore:
    """Build the store for the configured mode: in-memory under TEST_MODE, SQL otherwise."""
    if settings.degraded:
        logger.info("TEST MODE: database connection skipped, links kept in memory")
        return MemoryLinkStore()
    settings.check_storage()
    return SqlLinkStore(settings)

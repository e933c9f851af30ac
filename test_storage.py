"""
Tests for the link stores.

Every behavioural test runs against both the in-memory store and the
SQL store on an in-memory SQLite database, so the two stay in step.

Tests cover:
- Idempotent upsert (insert, refresh, stale writes ignored)
- The (message_id, url) key
- Per-user, per-channel and date range queries, newest first
- Top posters, search, distinct ids, oldest/newest and stats
- SQL specifics: persisted column names, table name, failures
"""

from datetime import timedelta

import pytest
from sqlalchemy import inspect

from conftest import make_record, make_settings, utc
from linkwatch.exceptions import ConfigurationError, StorageError
from linkwatch.schemas import UpsertOutcome
from linkwatch.storage import MemoryLinkStore, SqlLinkStore, create_store


def sql_store(**overrides) -> SqlLinkStore:
    return SqlLinkStore(make_settings(TEST_MODE=False, DATABASE_URL="sqlite://", **overrides))


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Fresh store of each kind per test."""
    store = MemoryLinkStore() if request.param == "memory" else sql_store()
    store.init()
    yield store
    store.close()


@pytest.fixture
def seeded_store(store):
    """
    Store with five records:
    alice (u1) posts three links in c1, bob (u2) one in c1 and carol (u3)
    one in c2, found one day apart starting 2024-02-01.
    """
    rows = [
        ("https://x.com/a/status/1", "m1", "u1", "alice", "c1"),
        ("https://x.com/a/status/2", "m2", "u1", "alice", "c1"),
        ("https://x.com/b/status/3", "m3", "u2", "bob", "c1"),
        ("https://x.com/a/status/4", "m4", "u1", "alice", "c1"),
        ("https://twitter.com/c/status/5", "m5", "u3", "carol", "c2"),
    ]
    for day, (url, message_id, author_id, username, channel_id) in enumerate(rows):
        store.upsert(make_record(
            url=url,
            message_id=message_id,
            author_id=author_id,
            username=username,
            channel_id=channel_id,
            found_at=utc(2024, 2, 1 + day),
            message_timestamp=utc(2024, 1, 1 + day, 12),
        ))
    return store


class TestUpsert:
    """Test idempotent upsert semantics."""

    def test_first_insert(self, store):
        record = make_record()
        assert store.upsert(record) == UpsertOutcome.INSERTED
        assert store.count() == 1

        stored = store.all()[0]
        assert stored.url == record.url
        assert stored.created_at == record.found_at
        assert stored.message_timestamp == record.message_timestamp

    def test_newer_write_refreshes(self, store):
        """Test a later sighting overwrites every field except created_at."""
        first = make_record(found_at=utc(2024, 2, 1), content="first text")
        later = make_record(found_at=utc(2024, 3, 1), content="edited text")
        store.upsert(first)

        assert store.upsert(later) == UpsertOutcome.UPDATED
        assert store.count() == 1
        stored = store.all()[0]
        assert stored.found_at == utc(2024, 3, 1)
        assert stored.message_content == "edited text"
        assert stored.created_at == utc(2024, 2, 1)

    def test_same_write_twice_is_noop(self, store):
        record = make_record()
        store.upsert(record)
        assert store.upsert(record) == UpsertOutcome.NOOP
        assert store.count() == 1

    def test_stale_write_ignored(self, store):
        store.upsert(make_record(found_at=utc(2024, 3, 1), content="current"))
        outcome = store.upsert(make_record(found_at=utc(2024, 2, 1), content="stale"))

        assert outcome == UpsertOutcome.NOOP
        stored = store.all()[0]
        assert stored.message_content == "current"
        assert stored.found_at == utc(2024, 3, 1)

    def test_repeated_upserts_keep_one_record(self, store):
        base = utc(2024, 2, 1)
        for hours in range(5):
            store.upsert(make_record(found_at=base + timedelta(hours=hours)))
        assert store.count() == 1
        assert store.all()[0].created_at == base


class TestRecordKey:
    """Test records are keyed by (message_id, url)."""

    def test_two_links_in_one_message(self, store):
        store.upsert(make_record(url="https://x.com/a/status/1", message_id="m1"))
        store.upsert(make_record(url="https://x.com/b/status/2", message_id="m1"))
        assert store.count() == 2

    def test_same_link_in_two_messages(self, store):
        """Test the same link posted twice by one author is kept twice."""
        url = "https://x.com/a/status/1"
        store.upsert(make_record(url=url, message_id="m1", found_at=utc(2024, 2, 1)))
        store.upsert(make_record(url=url, message_id="m2", found_at=utc(2024, 2, 2)))

        found = store.find_by_user("u1")
        assert [r.message_id for r in found] == ["m2", "m1"]


class TestFindByUser:
    """Test per-author queries."""

    def test_newest_first(self, seeded_store):
        found = seeded_store.find_by_user("u1")
        assert [r.message_id for r in found] == ["m4", "m2", "m1"]

    def test_limit(self, seeded_store):
        found = seeded_store.find_by_user("u1", limit=2)
        assert [r.message_id for r in found] == ["m4", "m2"]

    def test_unknown_author(self, seeded_store):
        assert seeded_store.find_by_user("nobody") == []

    def test_tie_broken_by_message_then_url(self, store):
        found_at = utc(2024, 2, 1)
        store.upsert(make_record(url="https://x.com/b/status/2", message_id="m1", found_at=found_at))
        store.upsert(make_record(url="https://x.com/a/status/1", message_id="m1", found_at=found_at))
        store.upsert(make_record(url="https://x.com/c/status/3", message_id="m2", found_at=found_at))

        found = store.find_by_user("u1")
        assert [(r.message_id, r.url) for r in found] == [
            ("m2", "https://x.com/c/status/3"),
            ("m1", "https://x.com/a/status/1"),
            ("m1", "https://x.com/b/status/2"),
        ]


class TestFindByChannel:

    def test_filters_channel(self, seeded_store):
        assert [r.message_id for r in seeded_store.find_by_channel("c2")] == ["m5"]

    def test_newest_first_with_limit(self, seeded_store):
        found = seeded_store.find_by_channel("c1", limit=3)
        assert [r.message_id for r in found] == ["m4", "m3", "m2"]


class TestFindByDateRange:
    """Test found_at range queries."""

    def test_bounds_inclusive(self, seeded_store):
        found = seeded_store.find_by_date_range(utc(2024, 2, 2), utc(2024, 2, 4))
        assert [r.message_id for r in found] == ["m4", "m3", "m2"]

    def test_empty_range(self, seeded_store):
        assert seeded_store.find_by_date_range(utc(2023, 1, 1), utc(2023, 12, 31)) == []

    def test_naive_bounds_treated_as_utc(self, seeded_store):
        start = utc(2024, 2, 5).replace(tzinfo=None)
        end = utc(2024, 2, 6).replace(tzinfo=None)
        assert [r.message_id for r in seeded_store.find_by_date_range(start, end)] == ["m5"]


class TestTopPosters:
    """Test author ranking."""

    def test_ranked_by_count(self, seeded_store):
        top = seeded_store.top_posters()
        assert [(p.author_id, p.username, p.count) for p in top] == [
            ("u1", "alice", 3),
            ("u2", "bob", 1),
            ("u3", "carol", 1),
        ]

    def test_limit(self, seeded_store):
        assert len(seeded_store.top_posters(limit=2)) == 2

    def test_counts_sum_to_total(self, seeded_store):
        assert sum(p.count for p in seeded_store.top_posters()) == seeded_store.count()

    def test_empty(self, store):
        assert store.top_posters() == []


class TestSearch:
    """Test case-insensitive substring search on url and content."""

    def test_matches_url(self, seeded_store):
        found = seeded_store.search("twitter.com")
        assert [r.message_id for r in found] == ["m5"]

    def test_case_insensitive(self, seeded_store):
        found = seeded_store.search("X.COM/A/")
        assert [r.message_id for r in found] == ["m4", "m2", "m1"]

    def test_matches_content(self, store):
        store.upsert(make_record(url="https://x.com/a/status/1", message_id="m1", content="Great Thread here"))
        store.upsert(make_record(url="https://x.com/a/status/2", message_id="m2", content="nothing"))
        assert [r.message_id for r in store.search("great thread")] == ["m1"]

    @pytest.mark.parametrize("query", ["école", "ÉCOLE", "École"])
    def test_non_ascii_case_insensitive(self, store, query):
        store.upsert(make_record(url="https://x.com/a/status/1", message_id="m1", content="ÉCOLE thread"))
        store.upsert(make_record(url="https://x.com/a/status/2", message_id="m2", content="ecole thread"))
        assert [r.message_id for r in store.search(query)] == ["m1"]

    def test_wildcards_are_literal(self, store):
        store.upsert(make_record(url="https://x.com/a/status/1", message_id="m1", content="100% real"))
        store.upsert(make_record(url="https://x.com/a/status/2", message_id="m2", content="1000 real"))
        store.upsert(make_record(url="https://x.com/a/status/3", message_id="m3", content="snake_case"))

        assert [r.message_id for r in store.search("0%")] == ["m1"]
        assert [r.message_id for r in store.search("_")] == ["m3"]

    def test_limit(self, seeded_store):
        assert len(seeded_store.search("status", limit=2)) == 2


class TestListings:
    """Test all(), count and distinct ids."""

    def test_all_in_first_insert_order(self, seeded_store):
        seeded_store.upsert(make_record(
            url="https://x.com/a/status/1",
            message_id="m1",
            found_at=utc(2024, 6, 1),
        ))
        assert [r.message_id for r in seeded_store.all()] == ["m1", "m2", "m3", "m4", "m5"]

    def test_count(self, seeded_store):
        assert seeded_store.count() == 5

    def test_distinct_channels(self, seeded_store):
        assert seeded_store.distinct_channels() == ["c1", "c2"]

    def test_distinct_authors(self, seeded_store):
        assert seeded_store.distinct_authors() == ["u1", "u2", "u3"]


class TestOldestNewest:

    def test_by_message_timestamp(self, seeded_store):
        assert seeded_store.oldest().message_id == "m1"
        assert seeded_store.newest().message_id == "m5"

    def test_empty(self, store):
        assert store.oldest() is None
        assert store.newest() is None


class TestStats:

    def test_seeded(self, seeded_store):
        stats = seeded_store.stats()
        assert stats.total_links == 5
        assert stats.authors_count == 3
        assert stats.channels_count == 2
        assert stats.top_posters[0].author_id == "u1"
        assert stats.oldest_message_ts == utc(2024, 1, 1, 12)
        assert stats.newest_message_ts == utc(2024, 1, 5, 12)

    def test_empty(self, store):
        stats = store.stats()
        assert stats.total_links == 0
        assert stats.top_posters == []
        assert stats.oldest_message_ts is None
        assert stats.newest_message_ts is None

    def test_ping(self, store):
        assert store.ping() is True


class TestSqlStore:
    """Test behaviour specific to the SQL store."""

    def test_persisted_column_names(self):
        store = sql_store()
        store.init()
        columns = {c["name"] for c in inspect(store.engine).get_columns("links")}
        assert {
            "url", "originalUrl", "messageId", "channelId", "channelName",
            "guildId", "guildName", "authorId", "authorUsername",
            "authorDisplayName", "messageContent", "messageTimestamp",
            "foundAt", "createdAt",
        } <= columns

    def test_custom_table_name(self):
        store = sql_store(LINKS_TABLE="tweet_links")
        store.init()
        store.upsert(make_record())
        assert "tweet_links" in inspect(store.engine).get_table_names()
        assert store.count() == 1

    def test_missing_table_raises_storage_error(self):
        store = sql_store()
        with pytest.raises(StorageError):
            store.upsert(make_record())

    def test_ping_fails_without_table(self):
        assert sql_store().ping() is False

    def test_guild_fields_nullable(self):
        store = sql_store()
        store.init()
        record = make_record().model_copy(update={"guild_id": None, "guild_name": None})
        store.upsert(record)
        stored = store.all()[0]
        assert stored.guild_id is None
        assert stored.guild_name is None


class TestCreateStore:

    def test_degraded_mode_uses_memory(self):
        assert isinstance(create_store(make_settings(TEST_MODE=True)), MemoryLinkStore)

    def test_database_url_uses_sql(self):
        store = create_store(make_settings(TEST_MODE=False, DATABASE_URL="sqlite://"))
        assert isinstance(store, SqlLinkStore)
        store.close()

    def test_missing_database_url_is_configuration_error(self):
        with pytest.raises(ConfigurationError, match="DATABASE_URL"):
            create_store(make_settings(TEST_MODE=False, DATABASE_URL=""))

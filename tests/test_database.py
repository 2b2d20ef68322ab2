"""Tests for the archive store: ingestion, links, full-text index and corruption handling."""

import asyncio
from datetime import datetime, timezone

import pytest

from conftest import make_message
from tg_archive.database import Database
from tg_archive.db.links import extract_links, url_domain
from tg_archive.db.messages import normalize_display_text
from tg_archive.db.core import SCHEMA_VERSION
from tg_archive.errors import ArchiveError, CorruptStoreError
from tg_archive.search import SearchEngine

CHANNEL = -1001
WHEN = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _msg(message_id=1, text="hello world", **overrides):
    overrides.setdefault(
        "channel", {"id": CHANNEL, "title": "Dev Chat", "username": "devchat", "kind": "group"},
    )
    return make_message(CHANNEL, message_id, overrides.pop("date", WHEN), text, **overrides)


async def _fts_rows(db, query):
    cursor = await db.core.reader.execute(
        "SELECT rowid FROM messages_fts WHERE messages_fts MATCH ?", (query,)
    )
    return await cursor.fetchall()


class TestIngest:
    @pytest.mark.asyncio
    async def test_repeated_ingest_is_idempotent(self, db):
        msg = _msg(text="see https://example.com/page")
        await db.ingest_messages([msg], source="archive")
        await db.ingest_messages([msg], source="archive")

        assert await db.messages.count_messages() == 1
        assert len(await db.links.get_message_links(CHANNEL, 1)) == 1
        assert len(await _fts_rows(db, '"hello"')) == 0
        assert len(await _fts_rows(db, '"page"')) == 1

    @pytest.mark.asyncio
    async def test_returns_stored_count(self, db):
        stored = await db.ingest_messages([_msg(1), _msg(2), None], source="archive")
        assert stored == 2

    @pytest.mark.asyncio
    async def test_unknown_source_rejected(self, db):
        with pytest.raises(ValueError):
            await db.ingest_messages([_msg()], source="mirror")

    @pytest.mark.asyncio
    async def test_get_message_joins_metadata(self, db):
        await db.ingest_messages(
            [_msg(sender_id=7, sender_name="Alice Liddell", sender_username="alice")],
            source="archive",
        )
        msg = await db.messages.get_message(CHANNEL, 1)
        assert msg["channel_title"] == "Dev Chat"
        assert msg["channel_username"] == "devchat"
        assert msg["sender_display_name"] == "Alice Liddell"
        assert msg["sender_username"] == "alice"
        assert msg["links"] == []

    @pytest.mark.asyncio
    async def test_missing_message_returns_none(self, db):
        assert await db.messages.get_message(CHANNEL, 404) is None

    @pytest.mark.asyncio
    async def test_edit_replaces_text_and_index(self, db):
        await db.ingest_messages([_msg(text="original draft")], source="archive")
        edited = _msg(text="final version", edit_date=datetime(2024, 3, 2, tzinfo=timezone.utc))
        await db.ingest_messages([edited], source="live")

        msg = await db.messages.get_message(CHANNEL, 1)
        assert msg["text"] == "final version"
        assert msg["edit_date"] == "2024-03-02T00:00:00+00:00"
        assert len(await _fts_rows(db, '"draft"')) == 0
        assert len(await _fts_rows(db, '"final"')) == 1

    @pytest.mark.asyncio
    async def test_source_keeps_first_ingest(self, db):
        await db.ingest_messages([_msg()], source="archive")
        await db.ingest_messages([_msg(text="edited live")], source="live")
        msg = await db.messages.get_message(CHANNEL, 1)
        assert msg["source"] == "archive"
        assert msg["text"] == "edited live"

    @pytest.mark.asyncio
    async def test_service_messages_not_stored(self, db):
        service = _msg(5, text="", service=True, topic_id=5, topic_title="Releases")
        stored = await db.ingest_messages([service], source="archive")
        assert stored == 0
        assert await db.messages.get_message(CHANNEL, 5) is None
        topics = await db.channels.get_topics(CHANNEL)
        assert topics[0]["title"] == "Releases"

    @pytest.mark.asyncio
    async def test_channel_last_message_at_only_moves_forward(self, db):
        later = _msg(2, date="2024-03-05T00:00:00+00:00")
        earlier = _msg(1, date="2024-02-01T00:00:00+00:00")
        await db.ingest_messages([later], source="live")
        await db.ingest_messages([earlier], source="archive")
        channel = await db.channels.get_channel(CHANNEL)
        assert channel["last_message_at"] == "2024-03-05T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_oldest_message(self, db):
        await db.ingest_messages([_msg(9), _msg(4), _msg(6)], source="archive")
        oldest = await db.messages.oldest_message(CHANNEL)
        assert oldest["message_id"] == 4
        assert await db.messages.oldest_message(-999) is None


class TestLinks:
    @pytest.mark.asyncio
    async def test_two_domains_extracted(self, db):
        text = "docs at https://docs.python.org/3/ and code at http://github.com/org/repo."
        await db.ingest_messages([_msg(text=text)], source="archive")
        links = await db.links.get_message_links(CHANNEL, 1)
        assert [(l["url"], l["domain"]) for l in links] == [
            ("https://docs.python.org/3/", "docs.python.org"),
            ("http://github.com/org/repo", "github.com"),
        ]

    @pytest.mark.asyncio
    async def test_links_recomputed_on_edit(self, db):
        await db.ingest_messages([_msg(text="https://a.example.com/x")], source="archive")
        await db.ingest_messages([_msg(text="moved to https://b.example.org/y")], source="live")
        links = await db.links.get_message_links(CHANNEL, 1)
        assert [l["domain"] for l in links] == ["b.example.org"]

    @pytest.mark.asyncio
    async def test_entity_urls_included(self, db):
        await db.ingest_messages(
            [_msg(text="click here", urls=["https://hidden.example.net/landing"])],
            source="archive",
        )
        links = await db.links.get_message_links(CHANNEL, 1)
        assert links[0]["domain"] == "hidden.example.net"

    @pytest.mark.asyncio
    async def test_get_links_domain_matches_subdomains(self, db):
        await db.ingest_messages([
            _msg(1, text="https://example.com/a"),
            _msg(2, text="https://blog.example.com/b"),
            _msg(3, text="https://notexample.com/c"),
        ], source="archive")
        links = await db.links.get_links(domain="example.com")
        assert sorted(l["message_id"] for l in links) == [1, 2]

    @pytest.mark.asyncio
    async def test_get_domains(self, db):
        await db.ingest_messages([
            _msg(1, text="https://example.com/a https://example.com/b"),
            _msg(2, text="https://other.org"),
        ], source="archive")
        domains = {d["domain"]: d["total_count"] for d in await db.links.get_domains()}
        assert domains == {"example.com": 2, "other.org": 1}


class TestExtractLinks:
    def test_strips_trailing_punctuation(self):
        assert extract_links("see https://example.com/path!") == [
            ("https://example.com/path", "example.com"),
        ]

    def test_deduplicates_in_order(self):
        links = extract_links("https://b.com https://a.com https://b.com")
        assert [u for u, _ in links] == ["https://b.com", "https://a.com"]

    def test_stops_at_cjk_punctuation(self):
        assert extract_links("链接https://example.com/x，谢谢") == [
            ("https://example.com/x", "example.com"),
        ]

    def test_no_text(self):
        assert extract_links(None) == []

    def test_domain_lowercased(self):
        assert url_domain("https://WWW.Example.COM/Path") == "www.example.com"


class TestDisplayText:
    def test_collapses_whitespace_and_zero_width(self):
        assert normalize_display_text("  hello\u200b \n world ") == "hello world"

    def test_nfkc(self):
        assert normalize_display_text("ｆｕｌｌｗｉｄｔｈ") == "fullwidth"

    def test_media_placeholder(self):
        assert normalize_display_text("", "document", "report.pdf") == "[document] report.pdf"
        assert normalize_display_text(None, "photo") == "[photo]"


class TestRenameReindex:
    @pytest.mark.asyncio
    async def test_channel_rename_updates_search(self, db):
        await db.ingest_messages([_msg(text="weekly sync")], source="archive")
        await db.channels.upsert_channel(
            {"id": CHANNEL, "title": "Platform Team", "username": "devchat", "kind": "group"}
        )
        engine = SearchEngine(db)
        assert [m["message_id"] for m in await engine.search("Platform")] == [1]
        assert len(await _fts_rows(db, 'channel_name:"Dev"')) == 0

    @pytest.mark.asyncio
    async def test_contact_rename_updates_search(self, db):
        await db.ingest_messages([_msg(sender_id=7, sender_name="Bob")], source="archive")
        await db.channels.upsert_contact(7, "Robert Paulson")
        assert len(await _fts_rows(db, '"Robert"')) == 1
        assert len(await _fts_rows(db, 'sender_name:"Bob"')) == 0


class TestConnect:
    @pytest.mark.asyncio
    async def test_corrupt_file_rejected(self, tmp_path):
        path = tmp_path / "messages.db"
        path.write_bytes(b"definitely not a sqlite database\n" * 200)
        with pytest.raises(CorruptStoreError):
            await Database(path).connect()
        # the unreadable file must not be replaced by a fresh store
        assert path.read_bytes().startswith(b"definitely not")

    @pytest.mark.asyncio
    async def test_directory_path_rejected(self, tmp_path):
        path = tmp_path / "messages.db"
        path.mkdir()
        with pytest.raises(CorruptStoreError):
            await Database(path).connect()

    @pytest.mark.asyncio
    async def test_reopen_keeps_index(self, tmp_path):
        async with Database(tmp_path / "messages.db") as first:
            await first.ingest_messages([_msg(text="persistent needle")], source="archive")
        async with Database(tmp_path / "messages.db") as second:
            assert second.search_status() == {"enabled": True, "version": 1}
            assert len(await _fts_rows(second, '"needle"')) == 1

    @pytest.mark.asyncio
    async def test_index_rebuilt_on_version_change(self, tmp_path):
        async with Database(tmp_path / "messages.db") as first:
            await first.ingest_messages([_msg(text="rebuild me")], source="archive")
            async with first.core.transaction() as conn:
                await conn.execute("UPDATE meta SET value = '0' WHERE key = 'fts_version'")
                await conn.execute("DELETE FROM messages_fts")
        async with Database(tmp_path / "messages.db") as second:
            assert await second.core.get_meta("fts_version") == "1"
            assert len(await _fts_rows(second, '"rebuild"')) == 1

    @pytest.mark.asyncio
    async def test_new_store_records_schema_version(self, tmp_path):
        async with Database(tmp_path / "messages.db") as db:
            assert await db.core.schema_version() == SCHEMA_VERSION
        async with Database(tmp_path / "messages.db") as db:
            cursor = await db.core.reader.execute("SELECT COUNT(*) AS cnt FROM schema_version")
            assert (await cursor.fetchone())["cnt"] == 1


class TestReadOnly:
    @pytest.mark.asyncio
    async def test_missing_store_is_not_created(self, tmp_path):
        path = tmp_path / "messages.db"
        async with Database(path, read_only=True) as db:
            assert db.search_status()["enabled"] is True
            assert await db.messages.count_messages() == 0
            assert await db.jobs.counts() == {"pending": 0, "in_progress": 0, "idle": 0, "error": 0}
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_reads_existing_store_and_rejects_writes(self, tmp_path):
        path = tmp_path / "messages.db"
        async with Database(path) as writer:
            await writer.ingest_messages([_msg(text="stored before")], source="archive")

        async with Database(path, read_only=True) as db:
            assert (await db.messages.get_message(CHANNEL, 1))["text"] == "stored before"
            with pytest.raises(ArchiveError):
                await db.ingest_messages([_msg(2, "not allowed")], source="live")
            with pytest.raises(ArchiveError):
                await db.jobs.create("@example")

        async with Database(path) as writer:
            assert await writer.messages.get_message(CHANNEL, 2) is None

    @pytest.mark.asyncio
    async def test_stale_index_left_for_the_lock_holder(self, tmp_path):
        path = tmp_path / "messages.db"
        async with Database(path) as writer:
            await writer.ingest_messages([_msg(text="find the needle")], source="archive")
            async with writer.core.transaction() as conn:
                await conn.execute("UPDATE meta SET value = '0' WHERE key = 'fts_version'")

        async with Database(path, read_only=True) as db:
            assert db.search_status() == {"enabled": False, "version": None}
            assert await db.core.get_meta("fts_version") == "0"
            # LIKE fallback still answers
            results = await SearchEngine(db).search("needle")
            assert [m["message_id"] for m in results] == [1]

        async with Database(path) as writer:
            assert await writer.core.get_meta("fts_version") == "1"


class TestClose:
    @pytest.mark.asyncio
    async def test_close_waits_for_cancelled_ingest(self, tmp_path):
        path = tmp_path / "messages.db"
        db = await Database(path).connect()
        original = db.messages._upsert_message

        async def slow_upsert(conn, msg, source):
            await asyncio.sleep(0.2)
            await original(conn, msg, source)

        db.messages._upsert_message = slow_upsert
        writer = asyncio.create_task(db.ingest_messages([_msg(text="late batch")], source="archive"))
        await asyncio.sleep(0.05)
        writer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await writer
        await db.close()

        async with Database(path) as reopened:
            assert (await reopened.messages.get_message(CHANNEL, 1))["text"] == "late batch"

    @pytest.mark.asyncio
    async def test_transaction_after_close(self, tmp_path):
        db = await Database(tmp_path / "messages.db").connect()
        await db.close()
        with pytest.raises(ArchiveError):
            async with db.core.transaction():
                pass

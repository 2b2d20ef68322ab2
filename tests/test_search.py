"""Tests for full-text search, structured filters and pagination."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from conftest import make_message
from tg_archive.search import SearchEngine, build_fts_query, decode_cursor, encode_cursor, query_terms

RUST = -2001
NEWS = -2002


def _at(day, hour=12):
    return datetime(2024, 5, day, hour, 0, tzinfo=timezone.utc)


def _rust(message_id, day, text, **overrides):
    channel = {"id": RUST, "title": "Rust Lovers", "username": "rustlovers", "kind": "forum"}
    return make_message(RUST, message_id, _at(day), text, channel=channel, **overrides)


def _news(message_id, day, text, **overrides):
    channel = {"id": NEWS, "title": "Daily News", "username": "dailynews", "kind": "channel"}
    return make_message(NEWS, message_id, _at(day), text, channel=channel, **overrides)


@pytest_asyncio.fixture
async def engine(db):
    await db.ingest_messages([
        _rust(1, 1, "borrow checker question", sender_id=11, sender_name="Ferris Crab"),
        _rust(2, 2, "new release notes", topic_id=2, topic_title="Announcements"),
        _rust(3, 3, "", media_type="document", media_filename="quarterly-report.pdf"),
        _rust(4, 4, "read https://blog.rust-lang.org/2024/05/ today"),
    ], source="archive")
    await db.ingest_messages([
        _news(1, 5, "markets rally on earnings"),
        _news(2, 6, "photo of the day", media_type="photo"),
        _news(3, 7, "analysis at https://docs.example.com/analysis"),
    ], source="live")
    return SearchEngine(db)


def _keys(results):
    return [(m["channel_id"], m["message_id"]) for m in results]


class TestTextMatching:
    @pytest.mark.asyncio
    async def test_matches_text(self, engine):
        assert _keys(await engine.search("borrow")) == [(RUST, 1)]

    @pytest.mark.asyncio
    async def test_matches_sender(self, engine):
        assert _keys(await engine.search("Ferris")) == [(RUST, 1)]

    @pytest.mark.asyncio
    async def test_matches_channel_title(self, engine):
        results = await engine.search("Daily")
        assert {m["channel_id"] for m in results} == {NEWS}
        assert len(results) == 3

    @pytest.mark.asyncio
    async def test_matches_topic_title(self, engine):
        assert _keys(await engine.search("Announcements")) == [(RUST, 2)]

    @pytest.mark.asyncio
    async def test_matches_filename(self, engine):
        results = await engine.search("quarterly")
        assert _keys(results) == [(RUST, 3)]
        assert results[0]["display_text"] == "[document] quarterly-report.pdf"

    @pytest.mark.asyncio
    async def test_matches_link_domain(self, engine):
        assert _keys(await engine.search("rust-lang")) == [(RUST, 4)]

    @pytest.mark.asyncio
    async def test_all_terms_required(self, engine):
        assert _keys(await engine.search("markets earnings")) == [(NEWS, 1)]
        assert await engine.search("markets borrow") == []

    @pytest.mark.asyncio
    async def test_syntax_characters_are_literal(self, engine):
        assert await engine.search('borrow" OR "markets') == []
        assert await engine.search("c++ (") == []

    @pytest.mark.asyncio
    async def test_like_fallback_without_fts(self, engine):
        engine.db.core.fts_enabled = False
        assert _keys(await engine.search("borrow")) == [(RUST, 1)]
        assert _keys(await engine.search("Ferris")) == [(RUST, 1)]
        assert _keys(await engine.search("docs.example")) == [(NEWS, 3)]


class TestFilters:
    @pytest.mark.asyncio
    async def test_list_orders_newest_first(self, engine):
        results = await engine.list()
        assert _keys(results)[:2] == [(NEWS, 3), (NEWS, 2)]
        assert len(results) == 7

    @pytest.mark.asyncio
    async def test_chat_by_username_or_id(self, engine):
        by_username = await engine.list(chat="@RustLovers")
        by_id = await engine.list(chat=str(RUST))
        by_title = await engine.list(chat="Rust Lovers")
        assert _keys(by_username) == _keys(by_id) == _keys(by_title)
        assert len(by_id) == 4

    @pytest.mark.asyncio
    async def test_topic(self, engine):
        assert _keys(await engine.list(chat=RUST, topic_id=2)) == [(RUST, 2)]

    @pytest.mark.asyncio
    async def test_source(self, engine):
        assert {m["channel_id"] for m in await engine.list(source="live")} == {NEWS}
        assert {m["channel_id"] for m in await engine.list(source="archive")} == {RUST}
        with pytest.raises(ValueError):
            await engine.list(source="elsewhere")

    @pytest.mark.asyncio
    async def test_media_type(self, engine):
        assert _keys(await engine.list(media_type="photo")) == [(NEWS, 2)]
        assert len(await engine.list(media_type="any")) == 2

    @pytest.mark.asyncio
    async def test_date_range_until_exclusive(self, engine):
        results = await engine.list(since=_at(2), until=_at(4))
        assert _keys(results) == [(RUST, 3), (RUST, 2)]

    @pytest.mark.asyncio
    async def test_domain_includes_subdomains(self, engine):
        assert _keys(await engine.list(domain="example.com")) == [(NEWS, 3)]
        assert _keys(await engine.list(domain="blog.rust-lang.org")) == [(RUST, 4)]
        assert await engine.list(domain="ample.com") == []

    @pytest.mark.asyncio
    async def test_query_combined_with_filter(self, engine):
        assert await engine.search("borrow", source="live") == []


class TestPagination:
    @pytest.mark.asyncio
    async def test_offset(self, engine):
        first = await engine.list(limit=3)
        second = await engine.list(limit=3, offset=3)
        assert len(first) == len(second) == 3
        assert not set(_keys(first)) & set(_keys(second))

    @pytest.mark.asyncio
    async def test_cursor_walks_all_results(self, engine):
        seen = []
        cursor = None
        while True:
            page = await engine.list(limit=2, cursor=cursor)
            seen.extend(_keys(page))
            if len(page) < 2:
                break
            cursor = encode_cursor(page[-1])
        assert seen == _keys(await engine.list())

    def test_cursor_round_trip(self):
        cursor = encode_cursor({"date": "2024-05-01T12:00:00+00:00", "channel_id": RUST, "message_id": 9})
        assert decode_cursor(cursor) == ("2024-05-01T12:00:00+00:00", RUST, 9)

    def test_bad_cursor(self):
        with pytest.raises(ValueError):
            decode_cursor("not-a-cursor")


class TestQueryTerms:
    def test_drops_punctuation_only_terms(self):
        assert query_terms('hello -- "world"') == ["hello", "world"]

    def test_fts_query_quotes_terms(self):
        assert build_fts_query(["c++", "rust"]) == '"c++" "rust"'

    def test_empty(self):
        assert query_terms(None) == []
        assert query_terms("   ") == []

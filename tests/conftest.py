"""Shared test fixtures for tg-archive tests."""

import copy
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from tg_archive.config import DEFAULTS
from tg_archive.database import Database
from tg_archive.utils import to_iso


def make_message(channel_id, message_id, date, text="", **overrides):
    """A normalized message dict, shaped like TelegramArchiveClient.normalize_message output."""
    msg = {
        "channel_id": channel_id,
        "message_id": message_id,
        "date": to_iso(date),
        "channel": {"id": channel_id, "title": None, "username": None, "kind": None},
        "sender_id": None,
        "sender_name": None,
        "sender_username": None,
        "topic_id": None,
        "topic_title": None,
        "edit_date": None,
        "text": text,
        "media_type": None,
        "media_filename": None,
        "media_mime": None,
        "reply_to_id": None,
        "forward_from": None,
        "urls": [],
        "service": False,
    }
    msg.update(overrides)
    return msg


class FakeClient:
    """In-memory client implementing the adapter contract used by the engine."""

    def __init__(self):
        self.channels = {}
        self.history = {}
        self.failures = []
        self.fetch_calls = []
        self.sink = None
        self.authorized = True
        self.sent = []
        self.destroyed = False
        self._next_sent_id = 10_000

    def add_channel(self, channel_id, title, username=None, kind="channel"):
        self.channels[channel_id] = {
            "id": channel_id, "title": title, "username": username,
            "kind": kind, "last_message_at": None,
        }
        self.history.setdefault(channel_id, [])

    def add_message(self, channel_id, message_id, date, text="", **overrides):
        summary = dict(self.channels.get(channel_id, {"id": channel_id}))
        summary.pop("last_message_at", None)
        msg = make_message(channel_id, message_id, date, text, channel=summary, **overrides)
        self.history.setdefault(channel_id, []).append(msg)
        return msg

    async def is_authorized(self):
        return self.authorized

    async def login(self):
        self.authorized = True
        return True

    async def logout(self):
        self.authorized = False
        return True

    async def fetch_dialogs(self):
        return [dict(c) for c in self.channels.values()]

    async def resolve_channel(self, ref):
        raw = str(ref).lstrip("@").lower()
        for summary in self.channels.values():
            if str(summary["id"]) == raw or (summary["username"] or "").lower() == raw:
                return dict(summary)
        raise ValueError(f'No user has "{ref}" as username')

    async def fetch_history(self, channel_id, before_id=None, limit=100):
        self.fetch_calls.append((channel_id, before_id, limit))
        if self.failures:
            raise self.failures.pop(0)
        messages = sorted(self.history.get(channel_id, []), key=lambda m: m["message_id"], reverse=True)
        if before_id:
            messages = [m for m in messages if m["message_id"] < before_id]
        return [copy.deepcopy(m) for m in messages[:limit]]

    async def normalize_message(self, raw, chat=None):
        if isinstance(raw, Exception):
            raise raw
        return copy.deepcopy(raw)

    async def start_updates(self, sink):
        self.sink = sink

    async def stop_updates(self):
        self.sink = None

    async def emit(self, message, kind="new"):
        await self.sink({"kind": kind, "raw": message})

    async def send_message(self, chat_ref, text):
        summary = await self.resolve_channel(chat_ref)
        self._next_sent_id += 1
        msg = make_message(
            summary["id"], self._next_sent_id, datetime.now(timezone.utc), text,
            channel={k: v for k, v in summary.items() if k != "last_message_at"},
        )
        self.sent.append(msg)
        return msg

    async def download_media(self, channel_id, message_id, dest_dir):
        return None

    async def destroy(self):
        self.destroyed = True


def daily(start, count):
    """count consecutive daily timestamps starting at start (UTC)."""
    return [start + timedelta(days=i) for i in range(count)]


@pytest.fixture
def config():
    cfg = copy.deepcopy(DEFAULTS)
    cfg["telegram"].update({"api_id": 12345, "api_hash": "0123456789abcdef"})
    cfg["sync"].update({
        "batch_size": 3,
        "inter_batch_delay": 0,
        "inter_job_delay": 0,
        "max_attempts": 3,
        "max_backoff": 300.0,
        "idle_poll_interval": 0.02,
        "shutdown_timeout": 5.0,
    })
    cfg["realtime"]["queue_size"] = 100
    return cfg


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest_asyncio.fixture
async def db(tmp_path):
    database = await Database(tmp_path / "messages.db").connect()
    yield database
    await database.close()


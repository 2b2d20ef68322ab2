"""
Telegram 客户端适配层
基于 Telethon (MTProto)：登录、会话列表、历史分页、实时更新、发送与媒体下载，
并把 Telethon 消息规范化为归档存储使用的字典
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from telethon import TelegramClient, events, utils
from telethon.tl.types import (
    Channel, Chat, User, MessageMediaPhoto,
    MessageMediaDocument, MessageMediaWebPage,
    MessageFwdHeader, PeerChannel, PeerUser,
    MessageEntityTextUrl, MessageActionTopicCreate,
    DocumentAttributeFilename, DocumentAttributeSticker,
    DocumentAttributeAnimated, DocumentAttributeVideo, DocumentAttributeAudio,
)

from .errors import AuthenticationError
from .utils import to_iso

logger = logging.getLogger("tg-archive.client")

EventSink = Callable[[Dict[str, Any]], Awaitable[None]]

GENERAL_TOPIC_ID = 1


def _get_sender_name(sender) -> Optional[str]:
    """从 sender 对象提取显示名"""
    if sender is None:
        return None
    if isinstance(sender, User):
        parts = [sender.first_name or "", sender.last_name or ""]
        name = " ".join(p for p in parts if p)
        return name or sender.username or str(sender.id)
    if isinstance(sender, (Channel, Chat)):
        return sender.title or str(sender.id)
    return str(getattr(sender, "id", "Unknown"))


def _get_channel_kind(entity) -> str:
    if isinstance(entity, User):
        return "direct"
    if isinstance(entity, Channel):
        if getattr(entity, "forum", False):
            return "forum"
        if getattr(entity, "broadcast", False):
            return "channel"
    return "group"


def channel_summary(entity, last_message_at=None) -> Dict[str, Any]:
    """实体 → 会话摘要（channels 表结构）"""
    if isinstance(entity, User):
        title = _get_sender_name(entity)
    else:
        title = getattr(entity, "title", None)
    return {
        "id": utils.get_peer_id(entity),
        "title": title,
        "username": getattr(entity, "username", None),
        "kind": _get_channel_kind(entity),
        "last_message_at": to_iso(last_message_at),
    }


def _get_media_info(media) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """获取媒体类型、文件名、MIME"""
    if media is None:
        return None, None, None
    if isinstance(media, MessageMediaPhoto):
        return "photo", None, "image/jpeg"
    if isinstance(media, MessageMediaDocument):
        doc = media.document
        attributes = getattr(doc, "attributes", None) or []
        mime = getattr(doc, "mime_type", None)
        media_type = "document"
        filename = None
        for attr in attributes:
            if isinstance(attr, DocumentAttributeFilename):
                filename = attr.file_name
            elif isinstance(attr, DocumentAttributeSticker):
                media_type = "sticker"
            elif isinstance(attr, DocumentAttributeAnimated):
                media_type = "animation"
            elif isinstance(attr, DocumentAttributeVideo) and media_type == "document":
                media_type = "video_note" if getattr(attr, "round_message", False) else "video"
            elif isinstance(attr, DocumentAttributeAudio) and media_type == "document":
                media_type = "voice" if getattr(attr, "voice", False) else "audio"
        return media_type, filename, mime
    if isinstance(media, MessageMediaWebPage):
        return "webpage", None, None
    return type(media).__name__.replace("MessageMedia", "").lower() or "unknown", None, None


def _get_forward_info(fwd: Optional[MessageFwdHeader]) -> Optional[str]:
    """获取转发来源"""
    if fwd is None:
        return None
    parts: List[str] = []
    if fwd.from_name:
        parts.append(fwd.from_name)
    if fwd.from_id:
        if isinstance(fwd.from_id, PeerUser):
            parts.append(f"user:{fwd.from_id.user_id}")
        elif isinstance(fwd.from_id, PeerChannel):
            parts.append(f"channel:{fwd.from_id.channel_id}")
    return " / ".join(parts) if parts else "unknown"


def _get_topic_id(message, forum: bool) -> Optional[int]:
    reply_to = getattr(message, "reply_to", None)
    if reply_to is not None and getattr(reply_to, "forum_topic", False):
        return getattr(reply_to, "reply_to_top_id", None) or reply_to.reply_to_msg_id
    if forum:
        return GENERAL_TOPIC_ID
    return None


class TelegramArchiveClient:
    """归档引擎所依赖的外部客户端（Telethon 实现）"""

    def __init__(self, config: dict, session_path: Union[str, Path]):
        tg_cfg = config.get("telegram", {})
        self.api_id = tg_cfg.get("api_id")
        self.api_hash = tg_cfg.get("api_hash")
        self.phone = tg_cfg.get("phone")
        self.session_path = Path(session_path)
        self._client: Optional[TelegramClient] = None
        self._handlers: List[Tuple[Callable, Any]] = []
        self._entities: Dict[int, Any] = {}
        self._topic_titles: Dict[Tuple[int, int], Optional[str]] = {}

    @property
    def client(self) -> TelegramClient:
        if self._client is None:
            if not self.api_id or not self.api_hash:
                raise AuthenticationError("缺少 telegram.api_id / api_hash，无法创建会话")
            self.session_path.parent.mkdir(parents=True, exist_ok=True)
            self._client = TelegramClient(str(self.session_path), int(self.api_id), self.api_hash)
        return self._client

    async def connect(self):
        if not self.client.is_connected():
            await self.client.connect()

    async def is_authorized(self) -> bool:
        await self.connect()
        return await self.client.is_user_authorized()

    async def _require_auth(self):
        if not await self.is_authorized():
            raise AuthenticationError("未登录 Telegram，请先运行 `tg-archive auth`")

    async def login(self) -> bool:
        """交互式登录（手机号 / 验证码由 Telethon 在终端提示）"""
        phone = self.phone
        await self.client.start(phone=phone if phone else lambda: input("请输入手机号: "))
        me = await self.client.get_me()
        logger.info(f"✅ 已登录: {me.first_name} (@{me.username})")
        return await self.client.is_user_authorized()

    async def logout(self) -> bool:
        await self.connect()
        return await self.client.log_out()

    async def fetch_dialogs(self) -> List[Dict[str, Any]]:
        """账号下全部会话的摘要"""
        await self._require_auth()
        summaries: List[Dict[str, Any]] = []
        async for dialog in self.client.iter_dialogs():
            entity = dialog.entity
            self._entities[utils.get_peer_id(entity)] = entity
            summaries.append(channel_summary(entity, last_message_at=dialog.date))
        return summaries

    async def _get_entity(self, ref: Union[int, str]):
        raw = str(ref).strip()
        if raw.lstrip("-").isdigit():
            key = int(raw)
            if key in self._entities:
                return self._entities[key]
            entity = await self.client.get_entity(key)
        else:
            entity = await self.client.get_entity(raw)
        self._entities[utils.get_peer_id(entity)] = entity
        return entity

    async def resolve_channel(self, ref: Union[int, str]) -> Dict[str, Any]:
        await self.connect()
        return channel_summary(await self._get_entity(ref))

    async def fetch_history(
        self, channel_id: int, before_id: Optional[int] = None, limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """拉取 before_id 之前（更旧）的一页消息，新 → 旧；服务消息也会返回并带 service 标记"""
        await self.connect()
        entity = await self._get_entity(channel_id)
        messages = await self.client.get_messages(entity, limit=limit, offset_id=before_id or 0)
        result = []
        for message in messages:
            normalized = await self.normalize_message(message, chat=entity)
            if normalized:
                result.append(normalized)
        return result

    async def normalize_message(self, message, chat=None) -> Optional[Dict[str, Any]]:
        """将 Telethon Message 转为字典"""
        if message is None or getattr(message, "peer_id", None) is None:
            return None

        channel_id = utils.get_peer_id(message.peer_id)
        if chat is None:
            chat = await message.get_chat()
        summary = channel_summary(chat) if chat is not None else {"id": channel_id}
        summary["id"] = channel_id
        summary["last_message_at"] = None

        base: Dict[str, Any] = {
            "channel_id": channel_id,
            "message_id": message.id,
            "date": to_iso(message.date),
            "channel": summary,
        }

        action = getattr(message, "action", None)
        if action is not None:
            base["service"] = True
            if isinstance(action, MessageActionTopicCreate):
                base["topic_id"] = message.id
                base["topic_title"] = action.title
                self._topic_titles[(channel_id, message.id)] = action.title
            return base

        sender = await message.get_sender()
        media_type, filename, mime = _get_media_info(message.media)
        topic_id = _get_topic_id(message, summary.get("kind") == "forum")
        topic_title = None
        if topic_id is not None and chat is not None:
            topic_title = await self._topic_title(chat, channel_id, topic_id)

        base.update({
            "sender_id": message.sender_id,
            "sender_name": _get_sender_name(sender),
            "sender_username": getattr(sender, "username", None),
            "topic_id": topic_id,
            "topic_title": topic_title,
            "edit_date": to_iso(message.edit_date),
            "text": message.message or "",
            "media_type": media_type,
            "media_filename": filename,
            "media_mime": mime,
            "reply_to_id": (
                message.reply_to.reply_to_msg_id
                if message.reply_to else None
            ),
            "forward_from": _get_forward_info(message.fwd_from),
            "urls": [
                e.url for e in (message.entities or [])
                if isinstance(e, MessageEntityTextUrl)
            ],
            "service": False,
        })
        return base

    async def _topic_title(self, chat, channel_id: int, topic_id: int) -> Optional[str]:
        key = (channel_id, topic_id)
        if key in self._topic_titles:
            return self._topic_titles[key]
        title = "General" if topic_id == GENERAL_TOPIC_ID else None
        if title is None:
            try:
                # 话题 ID 即建话题服务消息的 ID，标题取自该消息的 action
                root = await self.client.get_messages(chat, ids=topic_id)
                action = getattr(root, "action", None)
                if isinstance(action, MessageActionTopicCreate):
                    title = action.title
            except Exception as e:
                logger.debug(f"⚠️ 获取话题标题失败 ({channel_id}/{topic_id}): {e}")
        self._topic_titles[key] = title
        return title

    async def start_updates(self, sink: EventSink):
        """注册实时事件处理器，把原始事件交给 sink"""
        await self._require_auth()
        if self._handlers:
            return

        async def on_new_message(event):
            await sink({"kind": "new", "raw": event.message})

        async def on_message_edited(event):
            await sink({"kind": "edit", "raw": event.message})

        for handler, builder in (
            (on_new_message, events.NewMessage()),
            (on_message_edited, events.MessageEdited()),
        ):
            self.client.add_event_handler(handler, builder)
            self._handlers.append((handler, builder))
        logger.info("📡 已订阅实时更新")

    async def stop_updates(self):
        for handler, builder in self._handlers:
            self.client.remove_event_handler(handler, builder)
        if self._handlers:
            logger.info("📴 已取消实时更新订阅")
        self._handlers = []

    async def send_message(self, chat_ref: Union[int, str], text: str) -> Optional[Dict[str, Any]]:
        await self._require_auth()
        entity = await self._get_entity(chat_ref)
        message = await self.client.send_message(entity, text)
        return await self.normalize_message(message, chat=entity)

    async def download_media(
        self, channel_id: int, message_id: int, dest_dir: Union[str, Path],
    ) -> Optional[str]:
        """下载消息附带的媒体，返回本地路径；消息无媒体时返回 None"""
        await self._require_auth()
        entity = await self._get_entity(channel_id)
        message = await self.client.get_messages(entity, ids=message_id)
        if message is None or message.media is None:
            return None
        dest = Path(dest_dir)
        dest.mkdir(parents=True, exist_ok=True)
        return await self.client.download_media(message, file=str(dest) + "/")

    async def destroy(self):
        """释放网络资源"""
        if self._client is None:
            return
        await self.stop_updates()
        if self._client.is_connected():
            await self._client.disconnect()
            logger.info("🔌 已断开 Telegram 连接")

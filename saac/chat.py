"""聊天记录模块（支持 KV 持久化）"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

from astrbot.api import logger


@dataclass
class ChatMessage:
    """一条聊天消息

    extra 为附加信息，插件使用其中的 image / image_swipes / title。
    """

    text: str
    is_user: bool = False
    name: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def image_swipes(self) -> list[str]:
        return self.extra.setdefault("image_swipes", [])

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "is_user": self.is_user,
            "name": self.name,
            "extra": self.extra,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        return cls(
            text=str(data.get("text") or ""),
            is_user=bool(data.get("is_user", False)),
            name=str(data.get("name") or ""),
            extra=dict(data.get("extra") or {}),
        )


class ChatLog:
    """单个会话的聊天记录

    消息按时间顺序保存，内存与 KV 中都只保留最近 max_history 条。
    append() 返回的下标在会话内保持不变，被裁剪掉的消息 get() 返回 None。
    """

    KV_PREFIX = "chat_log:"

    def __init__(
        self,
        session_id: str,
        *,
        max_history: int = 50,
        get_kv: Callable[[str, Any], Coroutine[Any, Any, Any]] | None = None,
        put_kv: Callable[[str, Any], Coroutine[Any, Any, None]] | None = None,
    ):
        self.session_id = session_id
        self.max_history = max(int(max_history), 1)
        self.messages: list[ChatMessage] = []
        # KV 存储回调
        self._get_kv = get_kv
        self._put_kv = put_kv
        self._loaded = False
        self._load_lock = asyncio.Lock()
        # 已被裁剪掉的消息数
        self._offset = 0

    @property
    def kv_key(self) -> str:
        return f"{self.KV_PREFIX}{self.session_id}"

    def __len__(self) -> int:
        return len(self.messages)

    def __getitem__(self, index: int) -> ChatMessage:
        message = self.get(index)
        if message is None:
            raise IndexError(index)
        return message

    def get(self, index: int) -> ChatMessage | None:
        """按下标取消息，越界返回 None"""
        position = index - self._offset
        if 0 <= position < len(self.messages):
            return self.messages[position]
        return None

    def append(self, message: ChatMessage) -> int:
        """追加消息并返回其下标"""
        self.messages.append(message)
        index = self._offset + len(self.messages) - 1
        self._trim()
        return index

    def _trim(self):
        overflow = len(self.messages) - self.max_history
        if overflow > 0:
            del self.messages[:overflow]
            self._offset += overflow

    async def load(self) -> None:
        """从 KV 存储加载聊天记录，并发调用只会读取一次"""
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            try:
                await self._load_from_kv()
            finally:
                self._loaded = True

    async def _load_from_kv(self) -> None:
        if not self._get_kv:
            return
        try:
            data = await self._get_kv(self.kv_key, None)
            if data:
                # 数据格式: [{"text": ..., "is_user": ..., "extra": {...}}, ...]
                if isinstance(data, str):
                    data = json.loads(data)
                if isinstance(data, list):
                    loaded = [
                        ChatMessage.from_dict(item)
                        for item in data
                        if isinstance(item, dict)
                    ]
                    # 已追加消息的下标保持不变
                    if self.messages:
                        self._offset -= len(loaded)
                    self.messages = loaded + self.messages
                    self._trim()
                    logger.debug(
                        f"从 KV 加载聊天记录: {self.session_id} 共 {len(loaded)} 条"
                    )
        except Exception as e:
            logger.warning(f"加载聊天记录失败: {e}")

    async def save(self) -> None:
        """保存聊天记录到 KV 存储"""
        self._trim()
        if not self._put_kv:
            return
        try:
            await self._put_kv(
                self.kv_key, [message.to_dict() for message in self.messages]
            )
        except Exception as e:
            logger.warning(f"保存聊天记录失败: {e}")

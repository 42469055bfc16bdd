"""宿主交互模块

Host 协议描述插入流程需要的宿主能力；AstrBotHost 基于 AstrBot 的主动消息接口实现。
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Protocol

from astrbot.api import logger
from astrbot.api.event import MessageChain
from astrbot.api.message_components import Image, Plain

if TYPE_CHECKING:
    from astrbot.api.star import Context

    from .chat import ChatLog, ChatMessage

_IMG_TAG_RE = re.compile(r"<img\s+[^>]*?src=\"(data:[^\"]+)\"[^>]*>", re.IGNORECASE)


class Host(Protocol):
    """插入流程所需的宿主操作"""

    async def render_message(self, index: int, message: ChatMessage) -> None:
        """消息正文被修改后重新渲染"""
        ...

    async def attach_media(self, index: int, message: ChatMessage) -> None:
        """展示消息当前挂载的图像"""
        ...

    async def add_message(self, message: ChatMessage) -> None:
        """追加一条新消息并展示"""
        ...

    async def save_chat(self) -> None:
        """持久化聊天记录"""
        ...

    async def notify(self, level: str, text: str) -> None:
        """向用户发送简短提示"""
        ...


def strip_data_uri(data_uri: str) -> str:
    """data:image/png;base64,xxx -> xxx"""
    _, sep, payload = data_uri.partition(";base64,")
    return payload if sep else data_uri


def message_to_chain(text: str) -> MessageChain:
    """把带内联 <img> 引用的正文拆分为文本与图片组件"""
    components = []
    cursor = 0
    for match in _IMG_TAG_RE.finditer(text or ""):
        segment = text[cursor : match.start()].strip()
        if segment:
            components.append(Plain(segment))
        components.append(Image.fromBase64(strip_data_uri(match.group(1))))
        cursor = match.end()
    tail = (text or "")[cursor:].strip()
    if tail:
        components.append(Plain(tail))
    return MessageChain(chain=components)


class AstrBotHost:
    """基于 AstrBot Context.send_message 的宿主实现

    render_message 只记录最新渲染结果，由批处理结束后的 flush() 统一发送，
    避免多个标签逐个替换时重复发送整条消息。
    """

    def __init__(self, context: Context, session_id: str, chat_log: ChatLog):
        self.context = context
        self.session_id = session_id
        self.chat_log = chat_log
        self._pending_renders: dict[int, ChatMessage] = {}

    async def _send(self, chain: MessageChain) -> bool:
        """包装发送，平台发送失败只记录日志"""
        if not chain.chain:
            return False
        try:
            await self.context.send_message(self.session_id, chain)
            return True
        except Exception as e:
            logger.error(f"发送消息失败: {e}")
            return False

    async def render_message(self, index: int, message: ChatMessage) -> None:
        self._pending_renders[index] = message

    async def attach_media(self, index: int, message: ChatMessage) -> None:
        image = message.extra.get("image")
        if not image:
            return
        await self._send(MessageChain(chain=[Image.fromBase64(strip_data_uri(image))]))

    async def add_message(self, message: ChatMessage) -> None:
        self.chat_log.append(message)
        await self._send(message_to_chain(message.text))

    async def save_chat(self) -> None:
        await self.chat_log.save()

    async def notify(self, level: str, text: str) -> None:
        if level == "error":
            logger.warning(f"[SAAC] {text}")
            prefix = "❌ "
        else:
            logger.debug(f"[SAAC] {text}")
            prefix = "🎨 "
        await self._send(MessageChain(chain=[Plain(f"{prefix}{text}")]))

    async def flush(self) -> int:
        """发送所有待渲染的消息，返回发送条数"""
        sent = 0
        pending, self._pending_renders = self._pending_renders, {}
        for _, message in sorted(pending.items()):
            if await self._send(message_to_chain(message.text)):
                sent += 1
        return sent

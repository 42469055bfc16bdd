"""图像插入策略模块

按 insert_type 决定把生成的图像挂到原消息、替换标签文本，还是追加新消息。
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from astrbot.api import logger

from .chat import ChatMessage
from .plugin_config import (
    INSERT_DISABLED,
    INSERT_INLINE,
    INSERT_NEW_MESSAGE,
    INSERT_REPLACE,
)

if TYPE_CHECKING:
    from .host import Host
    from .scanner import GenerationRequest

DATA_URI_PREFIX = "data:image/png;base64,"
TITLE_MAX_LENGTH = 50


def normalize_image(image: str) -> str:
    """确保图像带有 data: 前缀，已带前缀的原样返回"""
    if image.startswith("data:"):
        return image
    return f"{DATA_URI_PREFIX}{image}"


def make_title(prompt: str) -> str:
    """标题使用标签内的原始描述，截断到 50 个字符"""
    return (prompt or "")[:TITLE_MAX_LENGTH]


def image_tag(data_uri: str) -> str:
    """消息正文中的内联图像引用"""
    return f'<img src="{data_uri}" style="max-width:100%;" />'


class InsertionPolicy:
    """图像插入处理器"""

    def __init__(self, host: Host):
        self.host = host

    async def insert(
        self,
        index: int,
        message: ChatMessage,
        request: GenerationRequest,
        image: str,
        insert_type: str,
    ) -> bool:
        """
        把一张生成结果插入聊天

        Args:
            index: 原消息在聊天记录中的下标
            message: 原消息
            request: 对应的生图请求
            image: 已带 data: 前缀的图像
            insert_type: 插入方式

        Returns:
            是否执行了插入
        """
        if insert_type == INSERT_DISABLED:
            return False

        title = make_title(request.prompt)

        if insert_type in (INSERT_INLINE, INSERT_REPLACE):
            message.image_swipes.append(image)
            message.extra["title"] = title

            if insert_type == INSERT_REPLACE:
                # 图像已嵌入正文，不再单独挂载
                message.text = message.text.replace(request.tag, image_tag(image), 1)
                message.extra.pop("image", None)
                await self.host.render_message(index, message)
            else:
                message.extra["image"] = image
                await self.host.attach_media(index, message)
        elif insert_type == INSERT_NEW_MESSAGE:
            new_message = ChatMessage(
                text=image_tag(image),
                is_user=False,
                name=message.name,
                extra={"image": image, "title": title},
            )
            await self.host.add_message(new_message)
        else:
            logger.warning(f"未知的图像插入方式 {insert_type}，跳过插入")
            return False

        await self.host.save_chat()
        return True

"""批量生图驱动模块

对单条消息中提取出的请求逐个生成、逐个插入；单个请求失败不影响后续请求。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from astrbot.api import logger

from .api_types import GenerationParams, SaacError
from .insertion import InsertionPolicy, normalize_image

if TYPE_CHECKING:
    from .chat import ChatLog
    from .host import Host
    from .plugin_config import PluginConfig
    from .saac_api import SaacAPIClient
    from .scanner import MessageScanner


@dataclass
class BatchResult:
    """一次批处理的结果统计"""

    index: int
    requested: int = 0
    succeeded: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)


class BatchDriver:
    """核心批量生图处理器"""

    def __init__(
        self,
        get_config: Callable[[], PluginConfig],
        get_scanner: Callable[[], MessageScanner],
        client: SaacAPIClient,
    ):
        """
        Args:
            get_config: 返回当前配置的函数（配置可能随时被指令修改）
            get_scanner: 返回当前已编译扫描器的函数
            client: SAAC 客户端
        """
        self.get_config = get_config
        self.get_scanner = get_scanner
        self.client = client

    async def process_message(
        self, host: Host, chat: ChatLog, index: int
    ) -> BatchResult:
        """
        处理一条收到的消息

        Args:
            host: 宿主操作
            chat: 聊天记录
            index: 消息下标
        """
        result = BatchResult(index=index)
        config = self.get_config()
        if not config.enabled:
            return result

        message = chat.get(index)
        if message is None or message.is_user:
            return result

        requests = self.get_scanner().scan(message.text)
        if not requests:
            return result

        result.requested = len(requests)
        config.log_info(f"SAAC 检测到 {len(requests)} 个生图请求 (消息 #{index})")
        if config.show_progress:
            await host.notify("info", "正在通过 SAAC 生成图像...")

        policy = InsertionPolicy(host)
        for i, request in enumerate(requests, start=1):
            # 每张图都读取最新配置，允许批处理中途切换插入方式
            config = self.get_config()
            if not config.enabled:
                config.log_info(
                    f"SAAC 图像插入已关闭，跳过剩余 {len(requests) - i + 1} 个请求"
                )
                break
            try:
                image = await self.client.generate(
                    GenerationParams(
                        character=config.default_character,
                        ai_prompt=request.prompt,
                        custom_prompt="",
                        negative_prompt=config.negative_prompt,
                    )
                )
                inserted = await policy.insert(
                    index, message, request, normalize_image(image), config.insert_type
                )
                if inserted:
                    result.succeeded += 1
                config.log_info(f"SAAC 第 {i}/{len(requests)} 张图像已处理")
            except SaacError as e:
                logger.error(f"SAAC 图像生成错误: {e.message}")
                result.errors.append(e.message)
                await host.notify("error", f"SAAC 图像生成失败: {e.message}")
            except Exception as e:
                logger.error(f"SAAC 图像处理异常: {e}", exc_info=True)
                result.errors.append(str(e))
                await host.notify("error", f"SAAC 图像生成失败: {e}")

        return result


class BatchScheduler:
    """后台批处理任务管理

    事件钩子把批处理交给后台任务后立即返回；任务结束时回调 on_complete。
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(
        self,
        job: Callable[[], Awaitable[BatchResult]],
        on_complete: Callable[[BatchResult], Awaitable[Any]] | None = None,
    ) -> asyncio.Task:
        """在后台运行批处理，异常只记录日志不外抛

        Args:
            job: 返回批处理协程的无参函数
            on_complete: 批处理正常结束后的回调
        """

        async def runner() -> BatchResult | None:
            try:
                result = await job()
            except asyncio.CancelledError:
                logger.debug("SAAC 批处理任务已取消")
                raise
            except Exception as e:
                logger.error(f"SAAC 批处理任务异常: {e}", exc_info=True)
                return None
            if on_complete is not None:
                try:
                    await on_complete(result)
                except Exception as e:
                    logger.error(f"SAAC 批处理完成回调异常: {e}", exc_info=True)
            return result

        task = asyncio.create_task(runner())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_all(self):
        """等待当前所有后台任务结束（用于测试与卸载）"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self):
        """取消所有未完成的后台任务"""
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        await self.wait_all()
        self._tasks.clear()

"""
AstrBot SAAC 图像生成插件主文件
检测 LLM 回复中的生图标签，调用 SAAC 服务端生成图像并插入聊天，同时向 LLM 注入生图指令
"""

from __future__ import annotations

import os
import re
from collections import OrderedDict

import yaml

from astrbot.api import logger
from astrbot.api.event import AstrMessageEvent, filter
from astrbot.api.message_components import Plain
from astrbot.api.provider import ProviderRequest
from astrbot.api.star import Context, Star, register

from .saac import (
    INSERT_REPLACE,
    INSERT_TYPES,
    INJECTION_POSITIONS,
    AstrBotHost,
    BatchDriver,
    BatchResult,
    BatchScheduler,
    ChatLog,
    ChatMessage,
    SaacAPIClient,
    SaacError,
    SettingsStore,
    inject_prompt,
    remove_injected,
)

PLUGIN_NAME = "astrbot_plugin_saac_image_gen"
# 内存中最多缓存的会话聊天记录数
MAX_CACHED_SESSIONS = 100


@register(
    PLUGIN_NAME,
    "saac",
    "SAAC 生图插件，识别回复中的生图标签并调用 SAAC 服务端生成图像",
    "",
)
class SaacImageGenerationPlugin(Star):
    def __init__(self, context: Context, config: dict):
        super().__init__(context)
        self.config = config
        # 从 metadata.yaml 读取版本号
        try:
            metadata_path = os.path.join(os.path.dirname(__file__), "metadata.yaml")
            with open(metadata_path, encoding="utf-8") as f:
                metadata = yaml.safe_load(f) or {}
                self.version = str(metadata.get("version", "")).strip()
        except Exception:
            self.version = ""
        if not self.version:
            self.version = "v1.0.0"

        self.settings = SettingsStore(
            config, save_fn=getattr(config, "save_config", None)
        )
        self.api_client = SaacAPIClient(self.settings.config.server_url)
        self.driver = BatchDriver(
            get_config=lambda: self.settings.config,
            get_scanner=lambda: self.settings.scanner,
            client=self.api_client,
        )
        self.scheduler = BatchScheduler()
        self.characters: list[str] = []
        self._chat_logs: OrderedDict[str, ChatLog] = OrderedDict()

    async def initialize(self):
        """插件初始化"""
        logger.info(f"🎨 SAAC 图像生成插件已加载 ({self.version})")
        self.log_info(f"  - 服务地址: {self.settings.config.server_url}")
        self.log_info(f"  - 插入方式: {self.settings.config.insert_type}")

    @filter.on_astrbot_loaded()
    async def on_astrbot_loaded(self):
        """AstrBot 完成初始化后拉取一次角色列表"""
        try:
            characters = await self._refresh_characters()
            self.log_info(f"已获取 SAAC 角色列表，共 {len(characters)} 个")
        except SaacError as e:
            logger.warning(f"获取 SAAC 角色列表失败: {e.message}")

    async def terminate(self):
        """插件卸载/重载时调用"""
        await self.scheduler.shutdown()
        self.settings.flush()
        await self.api_client.close()
        logger.info("🎨 SAAC 图像生成插件已卸载")

    def log_info(self, message: str):
        """根据配置输出info或debug级别日志"""
        self.settings.config.log_info(message)

    async def _get_chat_log(self, session_id: str) -> ChatLog:
        """获取会话聊天记录，首次使用时从 KV 加载"""
        chat_log = self._chat_logs.get(session_id)
        if chat_log is None:
            chat_log = ChatLog(
                session_id,
                max_history=self.settings.config.max_chat_history,
                get_kv=getattr(self, "get_kv_data", None),
                put_kv=getattr(self, "put_kv_data", None),
            )
            self._chat_logs[session_id] = chat_log
            while len(self._chat_logs) > MAX_CACHED_SESSIONS:
                evicted, _ = self._chat_logs.popitem(last=False)
                logger.debug(f"释放会话聊天记录缓存: {evicted}")
        else:
            self._chat_logs.move_to_end(session_id)
        await chat_log.load()
        return chat_log

    async def _refresh_characters(self) -> list[str]:
        """拉取角色列表，默认角色已不存在时重置为空"""
        characters = await self.api_client.fetch_characters()
        self.characters = characters
        current = self.settings.config.default_character
        if current and current not in characters:
            logger.info(f"默认角色 {current} 已不在服务端列表中，已重置")
            self.settings.update(default_character="")
        return characters

    # ------------------------------------------------------------------
    # 事件钩子
    # ------------------------------------------------------------------

    @filter.on_llm_request()
    async def inject_image_prompt(self, event: AstrMessageEvent, req: ProviderRequest):
        """向发往 LLM 的上下文注入生图指令"""
        try:
            if req.contexts is None:
                req.contexts = []
            removed = remove_injected(req.contexts, self.settings.config)
            if removed:
                logger.debug(f"已移除 {removed} 条历史注入指令")
            entry = inject_prompt(req.contexts, self.settings.config)
            if entry:
                logger.debug(
                    f"已注入生图指令 role={entry['role']} depth={self.settings.config.prompt_injection.depth}"
                )
        except Exception as e:
            logger.warning(f"注入生图指令失败: {e}")

    @filter.on_decorating_result()
    async def on_decorating_result(self, event: AstrMessageEvent):
        """收到 LLM 回复后把生图任务交给后台处理，立即返回"""
        try:
            await self._handle_reply(event)
        except Exception as e:
            logger.error(f"SAAC 处理回复失败: {e}", exc_info=True)

    async def _handle_reply(self, event: AstrMessageEvent):
        config = self.settings.config
        if not config.enabled:
            return

        result = event.get_result()
        if not result or not result.chain:
            return
        is_llm_result = getattr(result, "is_llm_result", None)
        if callable(is_llm_result) and not is_llm_result():
            return

        text = "".join(
            comp.text for comp in result.chain if isinstance(comp, Plain) and comp.text
        )
        if not text.strip():
            return

        session_id = event.unified_msg_origin
        chat_log = await self._get_chat_log(session_id)
        message = ChatMessage(text=text, is_user=False)
        index = chat_log.append(message)
        host = AstrBotHost(self.context, session_id, chat_log)

        withheld = False
        if config.insert_type == INSERT_REPLACE and self.settings.scanner.scan(text):
            # 正文在标签替换完成后由 render_message 发送
            result.chain = [c for c in result.chain if not isinstance(c, Plain)]
            withheld = True

        async def on_complete(batch: BatchResult):
            if withheld:
                await host.render_message(index, message)
            await host.flush()
            if batch.requested:
                self.log_info(
                    f"SAAC 批处理完成: 请求 {batch.requested}，成功 {batch.succeeded}，失败 {batch.failed}"
                )

        self.scheduler.schedule(
            lambda: self.driver.process_message(host, chat_log, index),
            on_complete=on_complete,
        )

    # ------------------------------------------------------------------
    # 设置指令
    # ------------------------------------------------------------------

    @staticmethod
    def _command_tail(event: AstrMessageEvent, subcommand: str) -> str:
        """取子指令之后的完整文本，保留空格"""
        text = (event.message_str or "").strip()
        m = re.search(rf"(?:^|\s){re.escape(subcommand)}(?:\s+|$)(.*)$", text, re.S)
        return m.group(1).strip() if m else ""

    def _format_status(self) -> str:
        config = self.settings.config
        injection = config.prompt_injection
        scanner = self.settings.scanner
        lines = [
            f"🎨 SAAC 生图插件 {self.version}",
            f"服务地址: {config.server_url or '(未配置)'}",
            f"默认角色: {config.default_character or '(无)'}",
            f"插入方式: {config.insert_type}",
            f"负面提示词: {config.negative_prompt or '(无)'}",
            f"提示词注入: {'开启' if injection.enabled else '关闭'}",
            f"注入位置: {injection.position}，深度 {injection.depth}",
            f"匹配正则: {injection.regex}{'' if scanner.valid else '（无效）'}",
        ]
        if self.characters:
            lines.append(f"可用角色: {', '.join(self.characters)}")
        return "\n".join(lines)

    @filter.command_group("saac")
    def saac_group(self):
        """SAAC 生图设置指令组"""
        pass

    @saac_group.command("status")
    async def show_status(self, event: AstrMessageEvent):
        """查看当前设置"""
        yield event.plain_result(self._format_status())

    @saac_group.command("test")
    async def test_connection(self, event: AstrMessageEvent):
        """测试与 SAAC 服务端的连接"""
        try:
            ok = await self.api_client.test_connection()
        except SaacError as e:
            yield event.plain_result(f"❌ 连接失败: {e.message}")
            return
        yield event.plain_result("✅ 连接成功" if ok else "❌ 连接失败")

    @saac_group.command("chars")
    async def refresh_characters(self, event: AstrMessageEvent):
        """刷新服务端角色列表"""
        try:
            characters = await self._refresh_characters()
        except SaacError as e:
            yield event.plain_result(f"❌ 获取角色列表失败: {e.message}")
            return
        if not characters:
            yield event.plain_result("服务端没有可用角色")
            return
        current = self.settings.config.default_character
        lines = [f"{'👉 ' if c == current else '  '}{c}" for c in characters]
        yield event.plain_result("可用角色:\n" + "\n".join(lines))

    @saac_group.command("url")
    @filter.permission_type(filter.PermissionType.ADMIN)
    async def set_server_url(self, event: AstrMessageEvent, url: str = ""):
        """设置 SAAC 服务地址"""
        config = self.settings.update(server_url=url)
        self.api_client.set_server_url(config.server_url)
        yield event.plain_result(f"✅ 服务地址已设置为: {config.server_url or '(未配置)'}")

    @saac_group.command("char")
    @filter.permission_type(filter.PermissionType.ADMIN)
    async def set_character(self, event: AstrMessageEvent, name: str = ""):
        """设置默认角色，留空表示不指定"""
        name = self._command_tail(event, "char")
        if name and self.characters and name not in self.characters:
            yield event.plain_result(f"❌ 未知角色: {name}，可先使用 /saac chars 刷新列表")
            return
        self.settings.update(default_character=name)
        yield event.plain_result(f"✅ 默认角色: {name or '(无)'}")

    @saac_group.command("mode")
    @filter.permission_type(filter.PermissionType.ADMIN)
    async def set_insert_type(self, event: AstrMessageEvent, mode: str = ""):
        """设置图像插入方式: disabled / inline / replace / new"""
        mode = (mode or "").strip().lower()
        if mode not in INSERT_TYPES:
            yield event.plain_result(f"❌ 可选插入方式: {' / '.join(INSERT_TYPES)}")
            return
        self.settings.update(insert_type=mode)
        yield event.plain_result(f"✅ 插入方式: {mode}")

    @saac_group.command("negative")
    @filter.permission_type(filter.PermissionType.ADMIN)
    async def set_negative_prompt(self, event: AstrMessageEvent, text: str = ""):
        """设置负面提示词，留空清除"""
        text = self._command_tail(event, "negative")
        self.settings.update(negative_prompt=text)
        yield event.plain_result(f"✅ 负面提示词: {text or '(无)'}")

    @saac_group.command("inject")
    @filter.permission_type(filter.PermissionType.ADMIN)
    async def set_injection_enabled(self, event: AstrMessageEvent, state: str = ""):
        """开启/关闭提示词注入: on / off"""
        state = (state or "").strip().lower()
        if state not in {"on", "off"}:
            yield event.plain_result("❌ 用法: /saac inject on|off")
            return
        self.settings.update_injection(enabled=state == "on")
        yield event.plain_result(f"✅ 提示词注入已{'开启' if state == 'on' else '关闭'}")

    @saac_group.command("position")
    @filter.permission_type(filter.PermissionType.ADMIN)
    async def set_injection_position(self, event: AstrMessageEvent, position: str = ""):
        """设置注入位置: system / deep_system / deep_user / deep_assistant"""
        position = (position or "").strip().lower()
        if position not in INJECTION_POSITIONS:
            yield event.plain_result(f"❌ 可选注入位置: {' / '.join(INJECTION_POSITIONS)}")
            return
        self.settings.update_injection(position=position)
        yield event.plain_result(f"✅ 注入位置: {position}")

    @saac_group.command("depth")
    @filter.permission_type(filter.PermissionType.ADMIN)
    async def set_injection_depth(self, event: AstrMessageEvent, depth: int = 0):
        """设置注入深度，0 表示追加到末尾"""
        injection = self.settings.update_injection(depth=depth)
        yield event.plain_result(f"✅ 注入深度: {injection.depth}")

    @saac_group.command("regex")
    @filter.permission_type(filter.PermissionType.ADMIN)
    async def set_injection_regex(self, event: AstrMessageEvent, regex: str = ""):
        """设置生图标签匹配正则，例如 /<pic>(.*?)<\\/pic>/g"""
        regex = self._command_tail(event, "regex")
        injection = self.settings.update_injection(regex=regex)
        if not self.settings.scanner.valid:
            yield event.plain_result(
                f"⚠️ 正则已保存但无法解析，将不会匹配任何内容: {self.settings.scanner.error}"
            )
            return
        yield event.plain_result(f"✅ 匹配正则: {injection.regex}")

    @saac_group.command("template")
    @filter.permission_type(filter.PermissionType.ADMIN)
    async def set_injection_template(self, event: AstrMessageEvent, text: str = ""):
        """设置注入的生图指令模板"""
        text = self._command_tail(event, "template")
        if not text:
            yield event.plain_result(
                "当前模板:\n" + self.settings.config.prompt_injection.prompt
            )
            return
        self.settings.update_injection(prompt=text)
        yield event.plain_result("✅ 生图指令模板已更新")

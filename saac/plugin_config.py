"""插件配置加载和管理模块"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, fields
from typing import Any, Callable

from astrbot.api import logger

from .scanner import MessageScanner

# 图像插入方式
INSERT_DISABLED = "disabled"
INSERT_INLINE = "inline"
INSERT_NEW_MESSAGE = "new"
INSERT_REPLACE = "replace"
INSERT_TYPES = (INSERT_DISABLED, INSERT_INLINE, INSERT_NEW_MESSAGE, INSERT_REPLACE)

# 提示词注入位置
INJECTION_POSITIONS = ("system", "deep_system", "deep_user", "deep_assistant")

DEFAULT_SERVER_URL = "http://localhost:3000"
DEFAULT_INJECTION_PROMPT = (
    "<image_generation>\n"
    "At the end of your response, output a <pic>visual description of the scene</pic> tag to generate an image.\n"
    "</image_generation>"
)
DEFAULT_INJECTION_REGEX = "/<pic>(.*?)<\\/pic>/g"

SAVE_DEBOUNCE_SECONDS = 1.0


@dataclass
class PromptInjectionConfig:
    """提示词注入设置"""

    enabled: bool = True
    prompt: str = DEFAULT_INJECTION_PROMPT
    regex: str = DEFAULT_INJECTION_REGEX
    position: str = "deep_system"
    depth: int = 0


@dataclass
class PluginConfig:
    """插件配置数据类"""

    # 服务设置
    server_url: str = DEFAULT_SERVER_URL
    default_character: str = ""

    # 生成设置
    insert_type: str = INSERT_INLINE
    negative_prompt: str = ""

    # 提示词注入
    prompt_injection: PromptInjectionConfig = field(
        default_factory=PromptInjectionConfig
    )

    # 运行设置
    show_progress: bool = True
    verbose_logging: bool = False
    max_chat_history: int = 50

    @property
    def enabled(self) -> bool:
        return self.insert_type != INSERT_DISABLED

    def log_info(self, message: str):
        """根据配置输出 info 或 debug 级别日志"""
        if self.verbose_logging:
            logger.info(message)
        else:
            logger.debug(message)


_SETTING_KEYS = frozenset(f.name for f in fields(PluginConfig)) - {"prompt_injection"}


def _to_int(value: Any, default: int, minimum: int = 0) -> int:
    try:
        return max(int(value), minimum)
    except (TypeError, ValueError):
        return default


def _to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "y", "on", "是"}
    return bool(value)


def normalize_server_url(url: str | None) -> str:
    return (url or "").strip().rstrip("/")


def normalize_insert_type(value: Any) -> str:
    raw = str(value or "").strip().lower()
    if raw not in INSERT_TYPES:
        if raw:
            logger.warning(f"未知的图像插入方式 {raw}，已回退为 {INSERT_INLINE}")
        return INSERT_INLINE
    return raw


def normalize_position(value: Any) -> str:
    raw = str(value or "").strip().lower()
    if raw not in INJECTION_POSITIONS:
        if raw:
            logger.warning(f"未知的注入位置 {raw}，已回退为 deep_system")
        return "deep_system"
    return raw


class ConfigLoader:
    """配置加载器"""

    def __init__(self, raw_config: dict[str, Any]):
        self.raw_config = raw_config

    def load(self) -> PluginConfig:
        """加载配置并返回 PluginConfig 实例"""
        config = PluginConfig()

        # 服务设置
        server_settings = self.raw_config.get("server_settings") or {}
        server_url = server_settings.get("server_url")
        config.server_url = (
            DEFAULT_SERVER_URL if server_url is None else normalize_server_url(server_url)
        )
        config.default_character = (
            server_settings.get("default_character") or ""
        ).strip()

        # 生成设置
        generation_settings = self.raw_config.get("generation_settings") or {}
        config.insert_type = normalize_insert_type(
            generation_settings.get("insert_type") or INSERT_INLINE
        )
        config.negative_prompt = generation_settings.get("negative_prompt") or ""

        # 提示词注入
        injection_settings = self.raw_config.get("prompt_injection") or {}
        injection = config.prompt_injection
        injection.enabled = _to_bool(injection_settings.get("enabled"), True)
        prompt = injection_settings.get("prompt")
        injection.prompt = DEFAULT_INJECTION_PROMPT if prompt is None else str(prompt)
        regex = (injection_settings.get("regex") or "").strip()
        injection.regex = regex or DEFAULT_INJECTION_REGEX
        injection.position = normalize_position(
            injection_settings.get("position") or "deep_system"
        )
        injection.depth = _to_int(injection_settings.get("depth"), 0)

        # 运行设置
        service_settings = self.raw_config.get("service_settings") or {}
        config.show_progress = _to_bool(service_settings.get("show_progress"), True)
        config.verbose_logging = _to_bool(
            service_settings.get("verbose_logging"), False
        )
        config.max_chat_history = _to_int(
            service_settings.get("max_chat_history"), 50, minimum=1
        )

        return config

    def dump(self, config: PluginConfig) -> dict[str, Any]:
        """把 PluginConfig 写回原始配置字典"""
        self.raw_config.setdefault("server_settings", {}).update(
            {
                "server_url": config.server_url,
                "default_character": config.default_character,
            }
        )
        self.raw_config.setdefault("generation_settings", {}).update(
            {
                "insert_type": config.insert_type,
                "negative_prompt": config.negative_prompt,
            }
        )
        injection = config.prompt_injection
        self.raw_config.setdefault("prompt_injection", {}).update(
            {
                "enabled": injection.enabled,
                "prompt": injection.prompt,
                "regex": injection.regex,
                "position": injection.position,
                "depth": injection.depth,
            }
        )
        self.raw_config.setdefault("service_settings", {}).update(
            {
                "show_progress": config.show_progress,
                "verbose_logging": config.verbose_logging,
                "max_chat_history": config.max_chat_history,
            }
        )
        return self.raw_config


class SettingsStore:
    """配置的加载/修改/持久化边界

    修改后写回原始配置，重新编译扫描正则，并延迟合并保存。
    """

    def __init__(
        self,
        raw_config: dict[str, Any],
        *,
        save_fn: Callable[[], Any] | None = None,
        debounce: float = SAVE_DEBOUNCE_SECONDS,
    ):
        self.loader = ConfigLoader(raw_config)
        self.config = self.loader.load()
        self.scanner = MessageScanner(self.config.prompt_injection.regex)
        self._save_fn = save_fn
        self._debounce = debounce
        self._save_handle: asyncio.TimerHandle | None = None

    def reload(self) -> PluginConfig:
        """从原始配置重新加载（例如 WebUI 修改后）"""
        self.config = self.loader.load()
        self.scanner = MessageScanner(self.config.prompt_injection.regex)
        return self.config

    def update(self, **changes: Any) -> PluginConfig:
        """修改顶层设置项"""
        for key, value in changes.items():
            if key not in _SETTING_KEYS:
                raise KeyError(f"未知设置项: {key}")
            if key == "server_url":
                value = normalize_server_url(value)
            elif key == "insert_type":
                value = normalize_insert_type(value)
            setattr(self.config, key, value)
        self._changed()
        return self.config

    def update_injection(self, **changes: Any) -> PromptInjectionConfig:
        """修改提示词注入设置项"""
        injection = self.config.prompt_injection
        for key, value in changes.items():
            if not hasattr(injection, key):
                raise KeyError(f"未知注入设置项: {key}")
            if key == "position":
                value = normalize_position(value)
            elif key == "depth":
                value = _to_int(value, 0)
            elif key == "regex":
                value = (value or "").strip() or DEFAULT_INJECTION_REGEX
            setattr(injection, key, value)
        if "regex" in changes:
            self.scanner = MessageScanner(injection.regex)
        self._changed()
        return injection

    def _changed(self):
        self.loader.dump(self.config)
        self.save_debounced()

    def save_debounced(self):
        """延迟保存，连续修改只触发一次写入"""
        if self._save_fn is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        if self._save_handle is not None:
            self._save_handle.cancel()
        self._save_handle = loop.call_later(self._debounce, self.flush)

    def flush(self):
        """立即保存待写入的配置"""
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        if self._save_fn is None:
            return
        try:
            self._save_fn()
            logger.debug("SAAC 插件配置已保存")
        except Exception as e:
            logger.error(f"保存插件配置失败: {e}")

"""SAAC 生图插件核心模块"""

from .api_types import (
    GenerationParams,
    NetworkError,
    RegexParseError,
    SaacError,
    ServerError,
)
from .batch import BatchDriver, BatchResult, BatchScheduler
from .chat import ChatLog, ChatMessage
from .host import AstrBotHost, Host, message_to_chain
from .insertion import InsertionPolicy, image_tag, make_title, normalize_image
from .plugin_config import (
    INSERT_DISABLED,
    INSERT_INLINE,
    INSERT_NEW_MESSAGE,
    INSERT_REPLACE,
    INSERT_TYPES,
    INJECTION_POSITIONS,
    ConfigLoader,
    PluginConfig,
    PromptInjectionConfig,
    SettingsStore,
)
from .prompt_injector import inject_prompt, injection_role, remove_injected
from .saac_api import SaacAPIClient
from .scanner import GenerationRequest, MessageScanner, regex_from_string

__all__ = [
    "AstrBotHost",
    "BatchDriver",
    "BatchResult",
    "BatchScheduler",
    "ChatLog",
    "ChatMessage",
    "ConfigLoader",
    "GenerationParams",
    "GenerationRequest",
    "Host",
    "INJECTION_POSITIONS",
    "INSERT_DISABLED",
    "INSERT_INLINE",
    "INSERT_NEW_MESSAGE",
    "INSERT_REPLACE",
    "INSERT_TYPES",
    "InsertionPolicy",
    "MessageScanner",
    "NetworkError",
    "PluginConfig",
    "PromptInjectionConfig",
    "RegexParseError",
    "SaacAPIClient",
    "SaacError",
    "ServerError",
    "SettingsStore",
    "image_tag",
    "inject_prompt",
    "injection_role",
    "make_title",
    "message_to_chain",
    "normalize_image",
    "regex_from_string",
    "remove_injected",
]

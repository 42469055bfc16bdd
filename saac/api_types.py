"""共享类型。

供 `saac/saac_api.py`、扫描器与批处理驱动共用的请求参数/异常类型。
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class GenerationParams:
    """单次生图请求参数（对应 SAAC 服务端 /api/st/generate 的请求体）"""

    character: str = ""
    ai_prompt: str = ""
    custom_prompt: str = ""
    negative_prompt: str = ""

    def to_payload(self) -> dict[str, str]:
        """构建 JSON 请求体，负面提示词为空时省略"""
        payload = {
            "character": self.character or "",
            "ai_prompt": self.ai_prompt or "",
            "custom_prompt": self.custom_prompt or "",
        }
        if self.negative_prompt:
            payload["negative_prompt"] = self.negative_prompt
        return payload


class SaacError(Exception):
    """SAAC 插件错误基类"""

    def __init__(self, message: str, status_code: int = None, error_type: str = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_type = error_type


class NetworkError(SaacError):
    """网络传输失败（含服务地址为空或不可达）"""

    def __init__(self, message: str):
        super().__init__(message, None, "network")


class ServerError(SaacError):
    """服务端返回非 2xx 响应或响应体不可用"""

    def __init__(self, message: str = "Server error", status_code: int = None):
        super().__init__(message or "Server error", status_code, "server")


class RegexParseError(SaacError, ValueError):
    """序列化正则表达式解析失败"""

    def __init__(self, message: str):
        super().__init__(message, None, "regex")

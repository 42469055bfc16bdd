"""消息扫描模块

从单条聊天消息中按用户配置的正则提取生图请求，只负责解析，不发起生成。
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from astrbot.api import logger

from .api_types import RegexParseError

# 序列化形式: /pattern/flags
_SERIALIZED_RE = re.compile(r"^/(.+)/([A-Za-z]*)$", re.DOTALL)
# JS 命名分组 (?<name>...)，排除后行断言 (?<= / (?<!
_JS_NAMED_GROUP_RE = re.compile(r"\(\?<(?![=!])")

_FLAG_MAP = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
}
# 全局匹配始终生效，其余标志无 Python 对应
_IGNORED_FLAGS = frozenset("guyd")


@dataclass(frozen=True)
class GenerationRequest:
    """一次正则匹配得到的生图请求"""

    prompt: str
    tag: str
    start: int = 0
    end: int = 0


def regex_from_string(serialized: str) -> re.Pattern[str]:
    """把 `/pattern/flags` 或裸正则字符串编译为 Python 正则

    Raises:
        RegexParseError: 标志非法或正则语法错误
    """
    raw = (serialized or "").strip()
    if not raw:
        raise RegexParseError("正则表达式为空")

    pattern = raw
    flags = 0
    m = _SERIALIZED_RE.match(raw)
    if m:
        pattern, flag_str = m.group(1), m.group(2)
        if len(set(flag_str)) != len(flag_str):
            raise RegexParseError(f"正则标志重复: {flag_str}")
        for flag in flag_str:
            if flag in _FLAG_MAP:
                flags |= _FLAG_MAP[flag]
            elif flag not in _IGNORED_FLAGS:
                raise RegexParseError(f"不支持的正则标志: {flag}")

    pattern = _JS_NAMED_GROUP_RE.sub("(?P<", pattern)
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        raise RegexParseError(f"正则表达式解析失败: {e}") from e


class MessageScanner:
    """按序列化正则扫描消息文本

    正则在构造时编译一次；解析失败时记录警告并不再匹配任何内容。
    """

    def __init__(self, serialized: str):
        self.serialized = serialized
        self.error: str | None = None
        try:
            self.pattern: re.Pattern[str] | None = regex_from_string(serialized)
        except RegexParseError as e:
            logger.warning(f"SAAC 扫描正则无效，将不匹配任何内容: {e.message}")
            self.pattern = None
            self.error = e.message

    @property
    def valid(self) -> bool:
        return self.pattern is not None

    def scan(self, text: str) -> list[GenerationRequest]:
        """按从左到右的顺序返回所有不重叠匹配"""
        if not text or self.pattern is None:
            return []

        requests = []
        for match in self.pattern.finditer(text):
            if self.pattern.groups:
                prompt = match.group(1) or ""
            else:
                prompt = match.group(0)
            requests.append(
                GenerationRequest(
                    prompt=prompt,
                    tag=match.group(0),
                    start=match.start(),
                    end=match.end(),
                )
            )
        return requests

"""提示词注入模块

在每次组装发往 LLM 的消息列表时插入固定的生图指令模板。
纯列表操作，不涉及网络与磁盘。
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .plugin_config import PluginConfig


def injection_role(position: str) -> str:
    """注入位置 -> 消息角色"""
    if position == "deep_assistant":
        return "assistant"
    if position == "deep_user":
        return "user"
    return "system"


def should_inject(config: PluginConfig) -> bool:
    return config.prompt_injection.enabled and config.enabled


def inject_prompt(
    messages: list[dict[str, Any]], config: PluginConfig
) -> dict[str, Any] | None:
    """
    向消息列表插入一条注入指令

    depth 为 0 时追加到末尾，大于 0 时插入到倒数第 depth 条之前
    （下标 len - depth，不足时插到开头）。

    Returns:
        插入的消息；未启用时返回 None
    """
    if not should_inject(config):
        return None

    injection = config.prompt_injection
    entry = {"role": injection_role(injection.position), "content": injection.prompt}

    depth = max(int(injection.depth or 0), 0)
    if depth == 0:
        messages.append(entry)
    else:
        messages.insert(max(len(messages) - depth, 0), entry)
    return entry


def remove_injected(messages: list[dict[str, Any]], config: PluginConfig) -> int:
    """
    移除之前请求残留的注入指令

    宿主可能把发出的消息列表写回对话历史，先清理再注入，保证每次请求只有一条。

    Returns:
        移除的条数
    """
    template = config.prompt_injection.prompt
    if not template:
        return 0
    kept = [
        m
        for m in messages
        if not (isinstance(m, dict) and m.get("content") == template)
    ]
    removed = len(messages) - len(kept)
    if removed:
        messages[:] = kept
    return removed

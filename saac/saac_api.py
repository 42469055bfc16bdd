"""
API客户端模块
提供 SAAC 图像服务端的 HTTP 客户端实现
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import aiohttp

from astrbot.api import logger

from .api_types import GenerationParams, NetworkError, ServerError


class SaacAPIClient:
    """SAAC 图像服务端客户端

    接口（均相对于 server_url）：
    - GET  /api/ws-config       连通性探测
    - GET  /api/st/characters   角色列表
    - POST /api/st/generate     生成图像，返回 base64

    每个请求只尝试一次，不做重试与退避，超时沿用 aiohttp 默认值。
    """

    GENERATE_PATH = "/api/st/generate"
    CHARACTERS_PATH = "/api/st/characters"
    PROBE_PATH = "/api/ws-config"

    def __init__(self, server_url: str):
        """
        初始化 API 客户端

        Args:
            server_url: 服务端地址，例如 http://localhost:3000
        """
        self.server_url = (server_url or "").strip().rstrip("/")
        self._session: aiohttp.ClientSession | None = None
        self._session_lock = asyncio.Lock()
        logger.debug(f"SAAC 客户端已初始化，服务地址: {self.server_url or '(未配置)'}")

    def set_server_url(self, server_url: str):
        """更新服务地址，后续请求立即生效"""
        self.server_url = (server_url or "").strip().rstrip("/")

    async def _get_session(self) -> aiohttp.ClientSession:
        """获取或创建可复用的 aiohttp 会话"""
        if self._session and not self._session.closed:
            return self._session
        async with self._session_lock:
            if self._session and not self._session.closed:
                return self._session
            self._session = aiohttp.ClientSession()
            return self._session

    async def close(self):
        """关闭内部复用的 aiohttp 会话"""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _url(self, path: str) -> str:
        if not self.server_url:
            raise NetworkError("未配置 SAAC 服务地址")
        return f"{self.server_url}{path}"

    @staticmethod
    def _parse_json(response_text: str) -> dict[str, Any]:
        """宽松解析 JSON 响应体，非对象或解析失败时返回空字典"""
        if not response_text:
            return {}
        try:
            data = json.loads(response_text)
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}

    async def _request(
        self, method: str, path: str, payload: dict[str, Any] | None = None
    ) -> tuple[int, dict[str, Any]]:
        """执行实际的 HTTP 请求，返回 (状态码, JSON 对象)"""
        url = self._url(path)
        session = await self._get_session()
        logger.debug(f"发送请求: {method} {url[:100]}")
        try:
            async with session.request(method, url, json=payload) as response:
                logger.debug(f"响应状态: {response.status}")
                response_text = await response.text()
                return response.status, self._parse_json(response_text)
        except aiohttp.ClientError as e:
            raise NetworkError(f"无法连接 SAAC 服务: {e}") from e
        except (OSError, ValueError, asyncio.TimeoutError) as e:
            # 非法 URL、DNS 失败、超时等
            raise NetworkError(f"无法连接 SAAC 服务: {e}") from e

    async def generate(self, params: GenerationParams) -> str:
        """
        生成图像

        Args:
            params: 请求参数

        Returns:
            服务端返回的 base64 图像（原样返回，不做校验）

        Raises:
            NetworkError: 传输失败
            ServerError: 非 2xx 响应或响应中缺少 image 字段
        """
        payload = params.to_payload()
        logger.debug(
            "生图请求概览: character=%s prompt_len=%s negative=%s",
            payload["character"] or "(无)",
            len(payload["ai_prompt"]),
            "negative_prompt" in payload,
        )
        status, data = await self._request("POST", self.GENERATE_PATH, payload)

        if not 200 <= status < 300:
            error_msg = data.get("error") or "Server error"
            logger.warning(f"SAAC 服务端错误 (HTTP {status}): {error_msg}")
            raise ServerError(str(error_msg), status)

        image = data.get("image")
        if not image:
            raise ServerError("服务器未返回图像", status)
        logger.debug("SAAC 生图成功")
        return image

    async def test_connection(self) -> bool:
        """探测服务端连通性，任意 2xx 视为成功"""
        status, _ = await self._request("GET", self.PROBE_PATH)
        return 200 <= status < 300

    async def fetch_characters(self) -> list[str]:
        """获取服务端可用角色列表"""
        status, data = await self._request("GET", self.CHARACTERS_PATH)
        if not 200 <= status < 300:
            raise ServerError(str(data.get("error") or f"HTTP {status}"), status)
        characters = data.get("characters") or []
        if not isinstance(characters, list):
            return []
        return [c for c in characters if isinstance(c, str)]


from __future__ import annotations

import pytest

from astrbot_plugin_saac_image_gen.saac.api_types import GenerationParams, ServerError
from astrbot_plugin_saac_image_gen.saac.chat import ChatLog, ChatMessage


class FakeHost:
    """记录所有宿主调用的替身"""

    def __init__(self, chat_log: ChatLog | None = None):
        self.chat_log = chat_log
        self.calls: list[tuple] = []
        self.notifications: list[tuple[str, str]] = []

    async def render_message(self, index, message):
        self.calls.append(("render", index, message.text))

    async def attach_media(self, index, message):
        self.calls.append(("attach", index, message.extra.get("image")))

    async def add_message(self, message):
        if self.chat_log is not None:
            self.chat_log.append(message)
        self.calls.append(("add", message.text))

    async def save_chat(self):
        self.calls.append(("save",))

    async def notify(self, level, text):
        self.notifications.append((level, text))

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


class FakeClient:
    """按提示词返回预设结果的 SAAC 客户端替身"""

    def __init__(self, responses: dict[str, str | Exception] | None = None, default="iVBORw0"):
        self.responses = responses or {}
        self.default = default
        self.requests: list[GenerationParams] = []

    async def generate(self, params: GenerationParams) -> str:
        self.requests.append(params)
        outcome = self.responses.get(params.ai_prompt, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class MemoryKV:
    def __init__(self):
        self.data: dict = {}

    async def get(self, key, default=None):
        return self.data.get(key, default)

    async def put(self, key, value):
        self.data[key] = value


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def chat_log():
    return ChatLog("test:session")


@pytest.fixture
def fake_host(chat_log):
    return FakeHost(chat_log)


@pytest.fixture
def assistant_message():
    return ChatMessage(text="Hello <pic>a cat</pic> world", is_user=False)


@pytest.fixture
def server_error():
    return ServerError("boom", 500)

import asyncio

import aiohttp
import pytest
from aiohttp import web

from astrbot_plugin_saac_image_gen.saac.api_types import (
    GenerationParams,
    NetworkError,
    ServerError,
)
from astrbot_plugin_saac_image_gen.saac.saac_api import SaacAPIClient


def make_app(generate_handler=None, characters=None, probe_status=200):
    received = []

    async def generate(request):
        body = await request.json()
        received.append(body)
        if generate_handler is not None:
            return await generate_handler(body)
        return web.json_response({"image": "iVBORw0"})

    async def list_characters(request):
        if characters is None:
            return web.json_response({"error": "no characters"}, status=500)
        return web.json_response({"characters": characters})

    async def ws_config(request):
        return web.json_response({}, status=probe_status)

    app = web.Application()
    app.router.add_post("/api/st/generate", generate)
    app.router.add_get("/api/st/characters", list_characters)
    app.router.add_get("/api/ws-config", ws_config)
    app["received"] = received
    return app


@pytest.fixture
async def make_client(aiohttp_server):
    clients = []

    async def factory(app):
        server = await aiohttp_server(app)
        client = SaacAPIClient(str(server.make_url("")))
        clients.append(client)
        return client

    yield factory
    for client in clients:
        await client.close()


async def test_generate_sends_expected_body(make_client):
    app = make_app()
    client = await make_client(app)

    image = await client.generate(
        GenerationParams(character="alice", ai_prompt="a cat", custom_prompt="")
    )

    assert image == "iVBORw0"
    assert app["received"] == [
        {"character": "alice", "ai_prompt": "a cat", "custom_prompt": ""}
    ]


async def test_generate_includes_negative_prompt_when_set(make_client):
    app = make_app()
    client = await make_client(app)

    await client.generate(GenerationParams(ai_prompt="a cat", negative_prompt="blurry"))

    assert app["received"][0]["negative_prompt"] == "blurry"


async def test_generate_returns_image_verbatim(make_client):
    async def handler(body):
        return web.json_response({"image": "data:image/jpeg;base64,abc"})

    client = await make_client(make_app(generate_handler=handler))

    assert await client.generate(GenerationParams(ai_prompt="x")) == "data:image/jpeg;base64,abc"


async def test_generate_server_error_uses_error_field(make_client):
    async def handler(body):
        return web.json_response({"error": "character not found"}, status=404)

    client = await make_client(make_app(generate_handler=handler))

    with pytest.raises(ServerError) as exc_info:
        await client.generate(GenerationParams(ai_prompt="x"))
    assert exc_info.value.message == "character not found"
    assert exc_info.value.status_code == 404


async def test_generate_server_error_defaults_message(make_client):
    async def handler(body):
        return web.Response(text="internal failure", status=500)

    client = await make_client(make_app(generate_handler=handler))

    with pytest.raises(ServerError) as exc_info:
        await client.generate(GenerationParams(ai_prompt="x"))
    assert exc_info.value.message == "Server error"


async def test_generate_missing_image_is_error(make_client):
    async def handler(body):
        return web.json_response({"status": "ok"})

    client = await make_client(make_app(generate_handler=handler))

    with pytest.raises(ServerError):
        await client.generate(GenerationParams(ai_prompt="x"))


async def test_generate_network_failure():
    client = SaacAPIClient("http://127.0.0.1:1")
    try:
        with pytest.raises(NetworkError):
            await client.generate(GenerationParams(ai_prompt="x"))
    finally:
        await client.close()


async def test_empty_server_url_is_network_error():
    client = SaacAPIClient("")
    with pytest.raises(NetworkError):
        await client.generate(GenerationParams(ai_prompt="x"))


async def test_test_connection(make_client):
    assert await (await make_client(make_app())).test_connection() is True
    assert await (await make_client(make_app(probe_status=503))).test_connection() is False


async def test_fetch_characters(make_client):
    client = await make_client(make_app(characters=["alice", "bob", 3]))
    assert await client.fetch_characters() == ["alice", "bob"]


async def test_fetch_characters_error(make_client):
    client = await make_client(make_app(characters=None))
    with pytest.raises(ServerError):
        await client.fetch_characters()


async def test_server_url_trailing_slash_is_stripped():
    client = SaacAPIClient("http://localhost:3000/")
    assert client.server_url == "http://localhost:3000"
    client.set_server_url(" http://example.com/ ")
    assert client.server_url == "http://example.com"


async def test_timeout_is_network_error(make_client):
    async def handler(body):
        await asyncio.sleep(1)
        return web.json_response({"image": "late"})

    client = await make_client(make_app(generate_handler=handler))
    client._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=0.05))

    with pytest.raises(NetworkError):
        await client.generate(GenerationParams(ai_prompt="a cat"))

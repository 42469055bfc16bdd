from unittest.mock import AsyncMock, MagicMock

from astrbot.api.message_components import Image, Plain

from astrbot_plugin_saac_image_gen.saac.chat import ChatLog, ChatMessage
from astrbot_plugin_saac_image_gen.saac.host import AstrBotHost, message_to_chain, strip_data_uri
from astrbot_plugin_saac_image_gen.saac.insertion import image_tag

IMAGE = "data:image/png;base64,AAA"


def make_host():
    context = MagicMock()
    context.send_message = AsyncMock(return_value=True)
    chat_log = ChatLog("aiocqhttp:GroupMessage:1")
    return AstrBotHost(context, "aiocqhttp:GroupMessage:1", chat_log), context, chat_log


def sent_chains(context):
    return [call.args[1].chain for call in context.send_message.await_args_list]


def test_strip_data_uri():
    assert strip_data_uri(IMAGE) == "AAA"
    assert strip_data_uri("AAA") == "AAA"


def test_message_to_chain_splits_text_and_images():
    chain = message_to_chain(f"Hello {image_tag(IMAGE)} world").chain

    assert [type(c) for c in chain] == [Plain, Image, Plain]
    assert chain[0].text == "Hello"
    assert chain[1].file == "base64://AAA"
    assert chain[2].text == "world"


def test_message_to_chain_plain_text_only():
    chain = message_to_chain("just text").chain
    assert len(chain) == 1 and chain[0].text == "just text"


async def test_attach_media_sends_current_image():
    host, context, _ = make_host()
    message = ChatMessage(text="hi", extra={"image": IMAGE})

    await host.attach_media(0, message)

    chain = sent_chains(context)[0]
    assert len(chain) == 1 and isinstance(chain[0], Image)


async def test_attach_media_without_image_sends_nothing():
    host, context, _ = make_host()
    await host.attach_media(0, ChatMessage(text="hi"))
    context.send_message.assert_not_awaited()


async def test_render_is_coalesced_until_flush():
    host, context, _ = make_host()
    message = ChatMessage(text=f"a {image_tag(IMAGE)}")

    await host.render_message(0, message)
    await host.render_message(0, message)
    context.send_message.assert_not_awaited()

    assert await host.flush() == 1
    assert context.send_message.await_count == 1
    assert await host.flush() == 0


async def test_add_message_appends_and_sends():
    host, context, chat_log = make_host()

    await host.add_message(ChatMessage(text=image_tag(IMAGE), extra={"image": IMAGE}))

    assert len(chat_log) == 1
    assert isinstance(sent_chains(context)[0][0], Image)


async def test_notify_sends_plain_text():
    host, context, _ = make_host()

    await host.notify("error", "SAAC 图像生成失败: boom")

    chain = sent_chains(context)[0]
    assert "boom" in chain[0].text


async def test_send_failure_is_swallowed():
    host, context, _ = make_host()
    context.send_message.side_effect = RuntimeError("platform down")

    await host.notify("info", "hello")
    await host.render_message(0, ChatMessage(text="x"))

    assert await host.flush() == 0


async def test_save_chat_persists_log():
    host, _, chat_log = make_host()
    chat_log.save = AsyncMock()

    await host.save_chat()

    chat_log.save.assert_awaited_once()

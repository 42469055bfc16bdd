import asyncio
import json

from conftest import MemoryKV

from astrbot_plugin_saac_image_gen.saac.chat import ChatLog, ChatMessage


def make_log(kv, session="aiocqhttp:GroupMessage:1", max_history=50):
    return ChatLog(session, max_history=max_history, get_kv=kv.get, put_kv=kv.put)


async def test_append_returns_index():
    log = ChatLog("s")
    assert log.append(ChatMessage(text="a")) == 0
    assert log.append(ChatMessage(text="b")) == 1
    assert log[1].text == "b"
    assert log.get(2) is None


async def test_save_and_load_round_trip():
    kv = MemoryKV()
    log = make_log(kv)
    message = ChatMessage(text="hi", extra={"image": "data:x", "image_swipes": ["data:x"]})
    log.append(message)
    await log.save()

    restored = make_log(kv)
    await restored.load()

    assert len(restored) == 1
    assert restored[0].extra["image_swipes"] == ["data:x"]
    assert restored[0].is_user is False


async def test_load_accepts_json_string():
    kv = MemoryKV()
    kv.data["chat_log:s"] = json.dumps([{"text": "old", "is_user": True}])
    log = make_log(kv, session="s")

    await log.load()

    assert log[0].text == "old"
    assert log[0].is_user is True


async def test_load_runs_once():
    kv = MemoryKV()
    kv.data["chat_log:s"] = [{"text": "old"}]
    log = make_log(kv, session="s")

    await log.load()
    await log.load()

    assert len(log) == 1


async def test_append_trims_history_and_keeps_indexes():
    log = ChatLog("s", max_history=2)
    indexes = [log.append(ChatMessage(text=str(i))) for i in range(5)]

    assert indexes == [0, 1, 2, 3, 4]
    assert len(log) == 2
    assert log.get(1) is None
    assert log[4].text == "4"


async def test_save_trims_history():
    kv = MemoryKV()
    log = make_log(kv, max_history=2)
    for i in range(5):
        log.append(ChatMessage(text=str(i)))

    await log.save()

    assert [m.text for m in log.messages] == ["3", "4"]
    assert [m["text"] for m in kv.data[log.kv_key]] == ["3", "4"]


async def test_kv_failures_are_not_raised():
    async def broken_get(key, default):
        raise RuntimeError("kv down")

    async def broken_put(key, value):
        raise RuntimeError("kv down")

    log = ChatLog("s", get_kv=broken_get, put_kv=broken_put)
    log.append(ChatMessage(text="a"))

    await log.load()
    await log.save()

    assert len(log) == 1


def test_image_swipes_property_creates_list():
    message = ChatMessage(text="a")
    message.image_swipes.append("data:x")
    assert message.extra["image_swipes"] == ["data:x"]


async def test_concurrent_loads_read_history_once():
    kv = MemoryKV()
    kv.data["chat_log:s"] = [{"text": "old"}]
    gate = asyncio.Event()
    reads = []

    async def slow_get(key, default):
        reads.append(key)
        await gate.wait()
        return await kv.get(key, default)

    log = ChatLog("s", get_kv=slow_get, put_kv=kv.put)
    first = asyncio.create_task(log.load())
    second = asyncio.create_task(log.load())
    await asyncio.sleep(0)
    gate.set()
    await asyncio.gather(first, second)

    assert reads == ["chat_log:s"]
    assert [m.text for m in log.messages] == ["old"]

import asyncio

from guardian_bot import SenderDispatcher
from transport import InboundMessage


def msg(sender, text):
    return InboundMessage(sender_id=sender, text=text)


async def test_same_sender_is_processed_in_order():
    seen = []

    async def handler(message):
        await asyncio.sleep(0)
        seen.append((message.sender_id, message.text))

    dispatcher = SenderDispatcher(handler)
    for i in range(5):
        dispatcher.submit(msg("A", str(i)))
        dispatcher.submit(msg("B", str(i)))
    await dispatcher.join()
    await dispatcher.close()

    assert [t for s, t in seen if s == "A"] == ["0", "1", "2", "3", "4"]
    assert [t for s, t in seen if s == "B"] == ["0", "1", "2", "3", "4"]


async def test_slow_sender_does_not_block_others():
    gate = asyncio.Event()
    seen = []

    async def handler(message):
        if message.sender_id == "slow":
            await gate.wait()
        seen.append(message.sender_id)

    dispatcher = SenderDispatcher(handler)
    dispatcher.submit(msg("slow", "1"))
    dispatcher.submit(msg("fast", "1"))
    for _ in range(5):
        await asyncio.sleep(0)

    assert seen == ["fast"]
    gate.set()
    await dispatcher.join()
    assert seen == ["fast", "slow"]
    await dispatcher.close()


async def test_handler_errors_do_not_kill_the_worker():
    seen = []

    async def handler(message):
        if message.text == "bad":
            raise RuntimeError("boom")
        seen.append(message.text)

    dispatcher = SenderDispatcher(handler)
    dispatcher.submit(msg("A", "bad"))
    dispatcher.submit(msg("A", "good"))
    await dispatcher.join()
    await dispatcher.close()

    assert seen == ["good"]


async def test_idle_workers_exit():
    async def handler(message):
        return None

    dispatcher = SenderDispatcher(handler, idle_timeout=0.05)
    dispatcher.submit(msg("A", "x"))
    await dispatcher.join()
    assert len(dispatcher) == 1

    await asyncio.sleep(0.3)
    assert len(dispatcher) == 0

    dispatcher.submit(msg("A", "y"))
    await dispatcher.join()
    await dispatcher.close()

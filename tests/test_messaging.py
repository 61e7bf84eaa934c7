import asyncio

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from async_msg_scheduler.messaging import GatewayClient, IncomingMessage, LoopbackClient, MessagingNotReady


@pytest_asyncio.fixture
async def gateway():
    requests = []

    async def record(request):
        body = await request.json() if request.can_read_body else None
        requests.append((request.method, request.path, body, request.headers.get("Authorization")))
        if request.path.endswith("/start"):
            return web.json_response({"ready": True})
        if request.path.endswith("/messages") and body["chat_id"].startswith("000"):
            return web.json_response({"ok": False})
        return web.json_response({"ok": True})

    app = web.Application()
    app.router.add_route("*", "/sessions/{tail:.*}", record)
    server = test_utils.TestServer(app)
    await server.start_server()
    server.requests = requests
    yield server
    await server.close()


@pytest.mark.asyncio
async def test_gateway_session_lifecycle(gateway):
    client = GatewayClient("acme", str(gateway.make_url("/")), token="tok")
    changes = []

    async def on_ready(ready):
        changes.append(ready)

    client.on_ready_change = on_ready
    await client.connect()
    assert client.ready and changes == [True]

    assert await client.send("0811", "hi") is True
    assert await client.send("000", "nope") is False
    await client.logout()
    assert not client.ready and changes == [True, False]
    await client.destroy()

    assert [(m, p) for m, p, _, _ in gateway.requests] == [
        ("POST", "/sessions/acme/start"),
        ("POST", "/sessions/acme/messages"),
        ("POST", "/sessions/acme/messages"),
        ("POST", "/sessions/acme/logout"),
        ("DELETE", "/sessions/acme"),
    ]
    assert gateway.requests[1][2] == {"chat_id": "0811@c.us", "text": "hi"}
    assert all(auth == "Bearer tok" for *_, auth in gateway.requests)


@pytest.mark.asyncio
async def test_gateway_unreachable_stays_not_ready():
    client = GatewayClient("acme", "http://127.0.0.1:9", timeout=1)
    await client.connect()
    assert not client.ready
    with pytest.raises(MessagingNotReady):
        await client.send("0811", "hi")


@pytest.mark.asyncio
async def test_wait_ready():
    client = LoopbackClient("acme")
    assert await client.wait_ready(0.01) is False

    waiter = asyncio.create_task(client.wait_ready(5))
    await asyncio.sleep(0)
    await client.connect()
    assert await waiter is True


@pytest.mark.asyncio
async def test_set_ready_notifies_only_on_change():
    client = LoopbackClient("acme")
    changes = []

    async def on_ready(ready):
        changes.append(ready)

    client.on_ready_change = on_ready
    await client.set_ready(True)
    await client.set_ready(True)
    await client.set_ready(False)
    assert changes == [True, False]


@pytest.mark.asyncio
async def test_loopback_records_and_forwards():
    client = LoopbackClient("acme")
    received = []

    async def on_incoming(message):
        received.append(message)

    client.on_incoming = on_incoming
    with pytest.raises(MessagingNotReady):
        await client.send("0811", "hi")

    await client.connect()
    assert await client.send("0811", "hi") is True
    assert client.sent == [("0811", "hi")]

    await client.receive(IncomingMessage("0811@c.us", "stop"))
    assert received == [IncomingMessage("0811@c.us", "stop")]

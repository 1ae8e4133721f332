import asyncio
import json
from types import SimpleNamespace

from websockets.asyncio.server import serve

from bridge import NO_READERS_HINT, NO_READERS_MESSAGE, BridgeService, SessionBroadcaster
from client import CardSessionController
from conftest import (
    ACS_READER, UID_CARD_NUMBER, FakeConnection, FakeSession, wait_until,
)
from events import CardDetected, CardRemoved, EventBus, ReaderAdded
from readers.manager import STATE_EMPTY, STATE_PRESENT


async def http_get(port, path):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(
        f"GET {path} HTTP/1.1\r\nHost: 127.0.0.1:{port}\r\nConnection: close\r\n\r\n".encode()
    )
    await writer.drain()
    
    head = await reader.readuntil(b"\r\n\r\n")
    status_line, *header_lines = head.decode().strip().split("\r\n")
    headers = {}
    for line in header_lines:
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()
    body = await reader.readexactly(int(headers["content-length"]))
    
    writer.close()
    await writer.wait_closed()
    return int(status_line.split()[1]), headers, json.loads(body)


# =============================================================================
# SessionBroadcaster
# =============================================================================

def test_greet_without_readers_sends_advisory_error():
    async def scenario():
        broadcaster = SessionBroadcaster(set(), EventBus())
        session = FakeSession()
        assert await broadcaster.greet(session, [])
        return session
    
    session = asyncio.run(scenario())
    
    assert session.sent == [
        {"type": "readers", "data": []},
        {"type": "error", "data": {"message": NO_READERS_MESSAGE, "error": NO_READERS_HINT}},
    ]


def test_greet_with_readers_sends_snapshot_only():
    async def scenario():
        broadcaster = SessionBroadcaster(set(), EventBus())
        session = FakeSession()
        await broadcaster.greet(session, [ACS_READER])
        return session
    
    session = asyncio.run(scenario())
    
    assert session.sent == [{"type": "readers", "data": [ACS_READER]}]


def test_events_reach_every_session_in_order():
    first, second = FakeSession(), FakeSession()
    
    async def scenario():
        bus = EventBus()
        broadcaster = SessionBroadcaster({first, second}, bus)
        task = asyncio.create_task(broadcaster.run())
        bus.publish(ReaderAdded(ACS_READER))
        bus.publish(CardDetected(ACS_READER, UID_CARD_NUMBER))
        bus.publish(CardRemoved(ACS_READER))
        await wait_until(lambda: len(first.sent) == 3 and len(second.sent) == 3)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return bus
    
    bus = asyncio.run(scenario())
    
    expected = ["readerConnected", "cardDetected", "cardRemoved"]
    assert first.types == expected
    assert second.types == expected
    assert first.sent[1]["data"] == {"reader": ACS_READER, "cardNumber": UID_CARD_NUMBER}
    assert bus.subscriber_count == 0


def test_closed_session_is_dropped_without_affecting_others():
    live, closed = FakeSession(), FakeSession(closed=True)
    sessions = {live, closed}
    
    async def scenario():
        broadcaster = SessionBroadcaster(sessions, EventBus())
        await broadcaster.broadcast(ReaderAdded(ACS_READER))
    
    asyncio.run(scenario())
    
    assert sessions == {live}
    assert live.types == ["readerConnected"]


# =============================================================================
# BridgeService
# =============================================================================

def test_handler_registers_session_until_it_ends(executor):
    async def scenario():
        bridge = BridgeService(executor=executor)
        bridge.manager.add_reader(ACS_READER)
        session = FakeSession()
        await bridge.handler(session)
        return bridge, session
    
    bridge, session = asyncio.run(scenario())
    
    assert session.types == ["readers"]
    assert bridge.sessions == set()


def test_handler_skips_session_closed_during_greeting(executor):
    async def scenario():
        bridge = BridgeService(executor=executor)
        await bridge.handler(FakeSession(closed=True))
        return bridge
    
    bridge = asyncio.run(scenario())
    
    assert bridge.sessions == set()


def test_status_payloads(executor):
    async def scenario():
        bridge = BridgeService(executor=executor)
        empty = bridge.readers_status()
        bridge.manager.add_reader(ACS_READER)
        bridge.sessions.add(FakeSession())
        return empty, bridge.readers_status(), bridge.status()
    
    empty, readers, status = asyncio.run(scenario())
    
    assert empty == {"readers": [], "count": 0, "status": "no_readers", "connected_clients": 0}
    assert readers == {"readers": [ACS_READER], "count": 1, "status": "ok", "connected_clients": 1}
    assert status["status"] == "running"
    assert status["readers"] == [ACS_READER]
    assert status["reader_count"] == 1
    assert status["connected_clients"] == 1
    assert isinstance(status["uptime"], float)
    assert status["uptime"] >= 0


def test_other_paths_go_to_websocket_handshake(executor):
    bridge = BridgeService(executor=executor)
    
    assert bridge.process_request(None, SimpleNamespace(path="/")) is None
    assert bridge.process_request(None, SimpleNamespace(path="/api/unknown")) is None


def test_card_scan_reaches_dialog_end_to_end(executor):
    confirmed = []
    
    async def scenario():
        bridge = BridgeService(connect=lambda name: FakeConnection(), executor=executor)
        bridge.manager.add_reader(ACS_READER)
        bridge.manager.update_status(ACS_READER, STATE_EMPTY)
        forwarder = asyncio.create_task(bridge.run())
        
        async with serve(bridge.handler, "127.0.0.1", 0, process_request=bridge.process_request) as server:
            port = list(server.sockets)[0].getsockname()[1]
            
            controller = CardSessionController(confirmed.append, url=f"ws://127.0.0.1:{port}")
            assert await controller.open()
            await wait_until(lambda: controller.readers == [ACS_READER])
            await wait_until(lambda: len(bridge.sessions) == 1)
            
            bridge.manager.update_status(ACS_READER, STATE_PRESENT)
            await wait_until(lambda: controller.card_number == UID_CARD_NUMBER)
            assert controller.submit()
            
            readers = await http_get(port, "/api/readers")
            status = await http_get(port, "/api/status?verbose=1")
            
            await controller.close()
            await wait_until(lambda: not bridge.sessions)
        
        forwarder.cancel()
        await asyncio.gather(forwarder, return_exceptions=True)
        await bridge.close()
        return readers, status
    
    readers, status = asyncio.run(scenario())
    
    assert confirmed == [UID_CARD_NUMBER]
    
    code, headers, body = readers
    assert code == 200
    assert headers["content-type"] == "application/json"
    assert headers["access-control-allow-origin"] == "*"
    assert body == {"readers": [ACS_READER], "count": 1, "status": "ok", "connected_clients": 1}
    
    code, headers, body = status
    assert code == 200
    assert body["status"] == "running"
    assert body["reader_count"] == 1

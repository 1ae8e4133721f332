import asyncio
import json
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from websockets.exceptions import ConnectionClosedOK


ACS_READER = "ACS ACR122U PICC Interface 0"

# GET UID answer for UID 04 12 34 56 (SW appended by APDU.response_bytes)
UID_RESPONSE = ([0x04, 0x12, 0x34, 0x56], 0x90, 0x00)
UID_CARD_NUMBER = "01670000000011930467"


class FakeConnection:
    """Stands in for a connected pyscard CardConnection"""
    
    def __init__(self, response=UID_RESPONSE, error=None, delay=0.0):
        self.response = response
        self.error = error
        self.delay = delay
        self.apdus = []
        self.disconnected = False
    
    def transmit(self, apdu):
        self.apdus.append(list(apdu))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response
    
    def disconnect(self):
        self.disconnected = True


class FakeSession:
    """Stands in for a server-side WebSocket connection"""
    
    def __init__(self, closed=False):
        self.closed = closed
        self.sent = []
    
    async def send(self, message):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(json.loads(message))
    
    def __aiter__(self):
        return self
    
    async def __anext__(self):
        raise StopAsyncIteration
    
    @property
    def types(self):
        return [message["type"] for message in self.sent]


def drain_queue(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


async def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="test_reader")
    yield pool
    pool.shutdown(wait=True)

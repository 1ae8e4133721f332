"""
Reader Manager
==============
Keeps the registry of accepted card readers and turns their PC/SC state
changes into bridge events.

Per reader:

    unknown -> idle <-> card_present        (error while "unavailable" is set)
    any state -> removed                    (reader unplugged)

On every card insert the manager connects in shared mode, sends GET UID,
decodes the response with the U-Pass codec and disconnects leaving the
card in the field. Events for one reader are published strictly in the
order their transitions happened, even though reads run in a thread pool.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from events import (
    BridgeEvent, CardDetected, CardRemoved, EventBus,
    ReaderAdded, ReaderError, ReaderRemoved,
)

from .apdu import APDU
from .upass import format_card_number
from .utils import is_supported_reader

logger = logging.getLogger(__name__)

# PC/SC reader state bits (SCARD_STATE_*)
STATE_UNAVAILABLE = 0x0008
STATE_EMPTY = 0x0010
STATE_PRESENT = 0x0020


class TransportState(Enum):
    UNKNOWN = "unknown"
    IDLE = "idle"
    CARD_PRESENT = "card_present"
    ERROR = "error"
    REMOVED = "removed"


@dataclass
class ReaderHandle:
    """One accepted reader, owned by the ReaderManager"""
    name: str
    state: TransportState = TransportState.UNKNOWN
    state_mask: int = 0


class ReaderManager:
    """Drives the card codec from reader state changes"""
    
    # Thread pool for blocking smartcard operations
    _executor: Optional[ThreadPoolExecutor] = None
    
    def __init__(
        self,
        registry: Dict[str, ReaderHandle],
        bus: EventBus,
        connect: Optional[Callable[[str], Any]] = None,
        timeout: Optional[float] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        """
        Args:
            registry: Shared reader registry, mutated only by this manager
            bus: Channel the domain events are published on
            connect: Blocking callable returning a connected card
                     connection (transmit/disconnect) for a reader name
            timeout: Optional limit in seconds for each connect/transmit
                     call; None waits for the middleware indefinitely
            executor: Thread pool for blocking calls
        """
        self.readers = registry
        self.bus = bus
        self.connect = connect
        self.timeout = timeout
        self.ignored: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        # Ordering is keyed by reader name so it survives a replug
        self._locks: Dict[str, asyncio.Lock] = {}
        self._pending: Dict[str, int] = {}
        
        if executor is not None:
            self._executor = executor
        elif ReaderManager._executor is None:
            ReaderManager._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="nfc_reader")
    
    @property
    def reader_names(self) -> List[str]:
        return list(self.readers)
    
    async def run_blocking(self, func, *args):
        """Run a blocking middleware call without stalling the event loop"""
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, partial(func, *args))
        if self.timeout is None:
            return await future
        try:
            return await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Operation timed out after {self.timeout}s")
            raise
    
    # -------------------------------------------------------------------------
    # Middleware callbacks (always called on the event loop)
    # -------------------------------------------------------------------------
    
    def add_reader(self, name: str) -> Optional[ReaderHandle]:
        if name in self.readers:
            return self.readers[name]
        
        if not is_supported_reader(name):
            if name not in self.ignored:
                logger.info(f"Ignoring non-ACS reader: {name}")
                self.ignored.add(name)
            return None
        
        handle = ReaderHandle(name)
        self.readers[name] = handle
        logger.info(f"New reader detected: {name}")
        self._publish_ordered(name, ReaderAdded(name))
        return handle
    
    def remove_reader(self, name: str):
        self.ignored.discard(name)
        handle = self.readers.pop(name, None)
        if handle is None:
            return
        
        handle.state = TransportState.REMOVED
        logger.info(f"Reader removed: {name}")
        self._publish_ordered(name, ReaderRemoved(name))
    
    def update_status(self, name: str, state_mask: int):
        """Apply a new PC/SC state bitmask reported for a reader"""
        handle = self.readers.get(name)
        if handle is None:
            return
        
        previous = handle.state_mask
        handle.state_mask = state_mask
        changes = previous ^ state_mask
        
        was_present = bool(previous & STATE_PRESENT)
        is_present = bool(state_mask & STATE_PRESENT)
        
        if state_mask & STATE_UNAVAILABLE:
            handle.state = TransportState.ERROR
        elif is_present:
            handle.state = TransportState.CARD_PRESENT
        else:
            handle.state = TransportState.IDLE
        
        if changes & STATE_UNAVAILABLE and state_mask & STATE_UNAVAILABLE:
            logger.error(f"Reader error: {name} is unavailable")
            self._publish_ordered(name, ReaderError("Reader error", "Reader unavailable", reader=name))
        
        if is_present and not was_present:
            self._enqueue(name, partial(self.read_card, name))
        elif was_present and not is_present:
            self._publish_ordered(name, CardRemoved(name))
    
    def report_error(self, message: str, error: Optional[str] = None):
        """Middleware-level failure, not tied to a reader"""
        self.bus.publish(ReaderError(message, error))
    
    # -------------------------------------------------------------------------
    # Card reading
    # -------------------------------------------------------------------------
    
    async def read_card(self, name: str) -> BridgeEvent:
        """Connect, send GET UID and decode. Returns the event to publish."""
        if self.connect is None:
            return ReaderError("Error connecting to card", "No card connector configured", reader=name)
        
        try:
            connection = await self.run_blocking(self.connect, name)
        except Exception as e:
            logger.error(f"Error connecting to card on {name}: {e}")
            return ReaderError("Error connecting to card", str(e) or type(e).__name__, reader=name)
        
        try:
            data, sw1, sw2 = await self.run_blocking(connection.transmit, APDU.GET_UID)
        except Exception as e:
            logger.error(f"Error transmitting to card on {name}: {e}")
            await self._disconnect(connection, name)
            return ReaderError("Error reading card", str(e) or type(e).__name__, reader=name)
        
        if (sw1, sw2) != APDU.SW_SUCCESS:
            logger.warning(f"Unexpected status word from {name}: {sw1:02X} {sw2:02X}")
        raw = APDU.response_bytes(data, sw1, sw2)
        logger.debug(f"Raw data from {name}: {raw.hex(' ').upper()}")
        card_number = format_card_number(raw)
        await self._disconnect(connection, name)
        
        if not card_number:
            logger.error("Invalid card data received")
            return ReaderError("Invalid card data received", reader=name)
        
        logger.info(f"Card detected on {name}: {card_number}")
        return CardDetected(name, card_number)
    
    async def _disconnect(self, connection, name: str):
        try:
            await self.run_blocking(connection.disconnect)
        except Exception as e:
            logger.error(f"Error disconnecting from card on {name}: {e}")
    
    # -------------------------------------------------------------------------
    # Per-reader ordering
    # -------------------------------------------------------------------------
    
    def _publish_ordered(self, name: str, event: BridgeEvent):
        """Publish now, or behind the work already queued for this reader"""
        if self._pending.get(name):
            self._enqueue(name, partial(self._ready, event))
        else:
            self.bus.publish(event)
    
    def _enqueue(self, name: str, produce: Callable[[], Awaitable[BridgeEvent]]):
        self._pending[name] = self._pending.get(name, 0) + 1
        task = self._spawn(self._publish_locked(name, produce))
        task.add_done_callback(partial(self._settle, name))
    
    async def _publish_locked(self, name: str, produce):
        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            self.bus.publish(await produce())
    
    def _settle(self, name: str, task: asyncio.Task):
        self._pending[name] -= 1
        if not self._pending[name]:
            del self._pending[name]
            self._locks.pop(name, None)
    
    @staticmethod
    async def _ready(event: BridgeEvent) -> BridgeEvent:
        return event
    
    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
    
    async def drain(self):
        """Wait until every pending read/notification has been published"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
    
    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()

"""
Bridge Domain Events
====================
Typed events published by the reader manager and consumed by the session
broadcaster. Each event knows its wire name and payload, so the
broadcaster never has to look inside them.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class BridgeEvent:
    """Base class for everything that goes over the event bus"""
    
    name = "event"
    
    def payload(self) -> Any:
        raise NotImplementedError
    
    def to_message(self) -> Dict[str, Any]:
        """Wire envelope sent to every session"""
        return {"type": self.name, "data": self.payload()}


@dataclass(frozen=True)
class ReaderAdded(BridgeEvent):
    reader: str
    name = "readerConnected"
    
    def payload(self) -> Dict[str, Any]:
        return {"name": self.reader}


@dataclass(frozen=True)
class ReaderRemoved(BridgeEvent):
    reader: str
    name = "readerDisconnected"
    
    def payload(self) -> Dict[str, Any]:
        return {"name": self.reader}


@dataclass(frozen=True)
class CardDetected(BridgeEvent):
    reader: str
    card_number: str
    name = "cardDetected"
    
    def payload(self) -> Dict[str, Any]:
        return {"reader": self.reader, "cardNumber": self.card_number}


@dataclass(frozen=True)
class CardRemoved(BridgeEvent):
    reader: str
    name = "cardRemoved"
    
    def payload(self) -> Dict[str, Any]:
        return {"reader": self.reader}


@dataclass(frozen=True)
class ReaderError(BridgeEvent):
    """Advisory or operational error, never fatal for a session"""
    message: str
    error: Optional[str] = None
    reader: Optional[str] = None
    name = "error"
    
    def payload(self) -> Dict[str, Any]:
        payload = {"message": self.message}
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class ReaderList(BridgeEvent):
    """Snapshot sent once to a newly connected session"""
    readers: tuple
    name = "readers"
    
    def payload(self) -> List[str]:
        return list(self.readers)


class EventBus:
    """
    In-process channel between the reader manager and its subscribers.
    
    Every subscriber gets its own FIFO queue, so events published for one
    reader come out in the order they went in.
    """
    
    def __init__(self):
        self._subscribers: List[asyncio.Queue] = []
    
    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue
    
    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)
    
    def publish(self, event: BridgeEvent):
        logger.debug(f"Event: {event}")
        for queue in self._subscribers:
            queue.put_nowait(event)
    
    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

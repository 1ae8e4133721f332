"""
NFC Bridge Service
==================
Owns the reader and session registries and pushes reader events to every
connected browser session over WebSocket.

Protocol (server -> client only), one JSON text frame per event:

    {"type": "readers",            "data": ["ACS ACR122U PICC Interface 0"]}
    {"type": "readerConnected",    "data": {"name": ...}}
    {"type": "readerDisconnected", "data": {"name": ...}}
    {"type": "cardDetected",       "data": {"reader": ..., "cardNumber": ...}}
    {"type": "cardRemoved",        "data": {"reader": ...}}
    {"type": "error",              "data": {"message": ..., "error": ...}}

HTTP status endpoints on the same port:

    GET /api/readers
    GET /api/status
"""

import asyncio
import json
import logging
import time
from http import HTTPStatus
from typing import Any, Callable, Dict, Optional, Set

import websockets

from events import BridgeEvent, EventBus, ReaderError, ReaderList
from readers.manager import ReaderHandle, ReaderManager

logger = logging.getLogger(__name__)

NO_READERS_MESSAGE = "No card readers detected"
NO_READERS_HINT = "Make sure your card reader is connected and recognized by the system"


class SessionBroadcaster:
    """Fans reader manager events out to all live sessions"""
    
    def __init__(self, sessions: Set, bus: EventBus):
        self.sessions = sessions
        self.bus = bus
        # Subscribe right away so nothing published before run() is lost
        self.queue = bus.subscribe()
    
    async def send(self, session, event: BridgeEvent) -> bool:
        """Send one event to one session. False if the session is gone."""
        try:
            await session.send(json.dumps(event.to_message(), ensure_ascii=False))
            return True
        except websockets.exceptions.ConnectionClosed:
            self.sessions.discard(session)
            return False
    
    async def greet(self, session, reader_names) -> bool:
        """Initial snapshot for a new session"""
        if not await self.send(session, ReaderList(tuple(reader_names))):
            return False
        
        if not reader_names:
            logger.info("No readers available to send to client")
            return await self.send(session, ReaderError(NO_READERS_MESSAGE, NO_READERS_HINT))
        
        logger.info(f"Available readers sent to client: {list(reader_names)}")
        return True
    
    async def broadcast(self, event: BridgeEvent):
        """Send message to all connected clients"""
        if not self.sessions:
            return
        for session in list(self.sessions):
            if not await self.send(session, event):
                logger.info(f"Dropped closed session. Total: {len(self.sessions)}")
    
    async def run(self):
        try:
            while True:
                event = await self.queue.get()
                await self.broadcast(event)
        finally:
            self.bus.unsubscribe(self.queue)


class BridgeService:
    """Main NFC Bridge WebSocket Server"""
    
    VERSION = "1.0.0"
    
    def __init__(
        self,
        connect: Optional[Callable[[str], Any]] = None,
        card_timeout: Optional[float] = None,
        executor=None,
    ):
        """
        Args:
            connect: Blocking card connector handed to the ReaderManager
            card_timeout: Optional connect/transmit limit in seconds
            executor: Thread pool for blocking card calls
        """
        self.readers: Dict[str, ReaderHandle] = {}
        self.sessions: Set = set()
        self.bus = EventBus()
        self.broadcaster = SessionBroadcaster(self.sessions, self.bus)
        self.manager = ReaderManager(
            self.readers, self.bus,
            connect=connect, timeout=card_timeout, executor=executor,
        )
        self.started_at = time.monotonic()
    
    # -------------------------------------------------------------------------
    # WebSocket
    # -------------------------------------------------------------------------
    
    async def handler(self, websocket):
        """Handle WebSocket connection"""
        # The snapshot can already list a reader whose readerConnected is
        # still queued for broadcast. Clients treat readerConnected for a
        # known reader as a no-op.
        if not await self.broadcaster.greet(websocket, self.manager.reader_names):
            return
        
        self.sessions.add(websocket)
        logger.info(f"Client connected. Total: {len(self.sessions)}")
        
        try:
            async for message in websocket:
                logger.debug(f"Ignoring client message: {message!r}")
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self.sessions.discard(websocket)
            logger.info(f"Client disconnected. Total: {len(self.sessions)}")
    
    async def run(self):
        """Forward reader events to the sessions until cancelled"""
        await self.broadcaster.run()
    
    async def close(self):
        await self.manager.close()
    
    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------
    
    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at
    
    def readers_status(self) -> Dict[str, Any]:
        names = self.manager.reader_names
        return {
            "readers": names,
            "count": len(names),
            "status": "ok" if names else "no_readers",
            "connected_clients": len(self.sessions),
        }
    
    def status(self) -> Dict[str, Any]:
        names = self.manager.reader_names
        return {
            "status": "running",
            "readers": names,
            "reader_count": len(names),
            "connected_clients": len(self.sessions),
            "uptime": self.uptime,
        }
    
    def process_request(self, connection, request):
        """Serve the status endpoints; anything else goes on to the handshake"""
        routes = {
            "/api/readers": self.readers_status,
            "/api/status": self.status,
        }
        route = routes.get(request.path.split("?", 1)[0])
        if route is None:
            return None
        
        response = connection.respond(HTTPStatus.OK, json.dumps(route()))
        del response.headers["Content-Type"]
        response.headers["Content-Type"] = "application/json"
        response.headers["Access-Control-Allow-Origin"] = "*"
        return response

"""
NFC Session Client
==================
Client side of the bridge protocol: the logic behind the "Allocate U-Pass"
dialog. Opening the dialog opens a session to the bridge, server events
are reduced into status fields, and a scanned or typed card number is
only handed to the confirm callback once it is a valid 20-digit number.

Run directly to watch bridge events in a terminal:
    python client.py [ws://localhost:3001]
"""

import asyncio
import json
import logging
import sys
from enum import Enum
from typing import Any, Callable, List, Optional

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

import config
from readers.upass import is_valid_card_number

logger = logging.getLogger(__name__)

CONNECTION_ERROR = "Could not connect to the NFC bridge. Make sure the NFC bridge server is running."
EMPTY_INPUT_ERROR = "Please enter a U-Pass number"
INVALID_INPUT_ERROR = "U-Pass number must be exactly 20 digits"


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class CardSessionController:
    """One dialog's session with the bridge"""
    
    def __init__(
        self,
        on_confirm: Callable[[str], Any],
        url: str = config.BRIDGE_URL,
        on_update: Optional[Callable[[str, Any], None]] = None,
        open_timeout: float = 5.0,
    ):
        """
        Args:
            on_confirm: Called with the card number once it passes validation
            url: Bridge WebSocket endpoint
            on_update: Optional listener called with (event, data) after
                       every server event has been applied
            open_timeout: Seconds to wait for the connection to open
        """
        self.on_confirm = on_confirm
        self.url = url
        self.on_update = on_update
        self.open_timeout = open_timeout
        
        self.state = ConnectionState.DISCONNECTED
        self._connection = None
        self._opening: Optional[asyncio.Task] = None
        self._listener: Optional[asyncio.Task] = None
        # Bumped by close() so a late handshake knows the dialog is gone
        self._generation = 0
        self.reset()
    
    def reset(self):
        """Clear everything the dialog shows"""
        self.card_number = ""
        self.error: Optional[str] = None
        self.field_error: Optional[str] = None
        self.readers: List[str] = []
        self.status_message = ""
    
    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED
    
    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    
    async def open(self) -> bool:
        """Dialog opened: connect once, no retries"""
        if self.state is not ConnectionState.DISCONNECTED:
            return self.is_connected
        
        self.state = ConnectionState.CONNECTING
        self.status_message = "Connecting to NFC bridge..."
        generation = self._generation
        self._opening = asyncio.ensure_future(connect(self.url, open_timeout=self.open_timeout))
        
        try:
            connection = await self._opening
        except asyncio.CancelledError:
            if generation != self._generation:
                logger.info("Dialog closed while connecting")
                return False
            self._opening = None
            self.state = ConnectionState.DISCONNECTED
            raise
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as e:
            if generation != self._generation:
                return False
            self._opening = None
            logger.error(f"Connection error: {e}")
            self.state = ConnectionState.DISCONNECTED
            self.error = CONNECTION_ERROR
            self.status_message = ""
            return False
        
        if generation != self._generation:
            await connection.close()
            return False
        
        self._opening = None
        self._connection = connection
        self.state = ConnectionState.CONNECTED
        self.status_message = "Connected to NFC bridge"
        self._listener = asyncio.create_task(self._listen(self._connection))
        return True
    
    async def close(self):
        """Dialog closed: tear down whatever state the session is in"""
        self._generation += 1
        opening, listener, connection = self._opening, self._listener, self._connection
        self._opening = None
        self._listener = None
        self._connection = None
        
        if opening is not None and not opening.done():
            opening.cancel()
        if listener is not None and not listener.done():
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
        if connection is not None:
            await connection.close()
        
        self.state = ConnectionState.DISCONNECTED
        self.reset()
    
    async def wait_closed(self):
        """Wait until the bridge ends the session"""
        if self._listener is not None:
            await asyncio.shield(self._listener)
    
    async def _listen(self, connection):
        try:
            async for message in connection:
                self.handle_message(message)
        except ConnectionClosed as e:
            logger.info(f"Disconnected from NFC bridge: {e}")
        finally:
            if self._connection is connection:
                self.state = ConnectionState.DISCONNECTED
                self.status_message = "Disconnected from NFC bridge"
    
    # -------------------------------------------------------------------------
    # Server events
    # -------------------------------------------------------------------------
    
    def handle_message(self, message):
        try:
            envelope = json.loads(message)
            event = envelope["type"]
        except (ValueError, TypeError, KeyError):
            logger.warning(f"Ignoring malformed message: {message!r}")
            return
        self.handle_event(event, envelope.get("data"))
    
    def handle_event(self, event: str, data: Any):
        handler = getattr(self, f"_on_{event}", None)
        if handler is None:
            logger.debug(f"Ignoring unknown event: {event}")
            return
        handler(data or {})
        if self.on_update:
            self.on_update(event, data)
    
    def _on_readers(self, data):
        self.readers = list(data)
        if self.readers:
            self.error = None
            self.status_message = (
                f"Connected to NFC reader: {', '.join(self.readers)}. "
                "Place a U-Pass card on the reader."
            )
        else:
            self.status_message = "No NFC readers detected"
    
    def _on_readerConnected(self, data):
        name = data.get("name")
        if name and name not in self.readers:
            self.readers.append(name)
        self.error = None
        self.status_message = f"NFC reader connected: {name}"
    
    def _on_readerDisconnected(self, data):
        name = data.get("name")
        if name in self.readers:
            self.readers.remove(name)
        if self.readers:
            self.status_message = f"NFC reader disconnected: {name}"
        else:
            self.status_message = "No NFC readers connected"
    
    def _on_cardDetected(self, data):
        self.card_number = str(data.get("cardNumber") or "")
        self.error = None
        self.field_error = None
        self.status_message = f"Card detected on {data.get('reader')}. Confirm to allocate the U-Pass."
    
    def _on_cardRemoved(self, data):
        self.status_message = "Card removed. Scan again or enter the U-Pass number manually."
    
    def _on_error(self, data):
        message = data.get("message") or "NFC error"
        detail = data.get("error")
        self.error = f"{message}: {detail}" if detail else message
    
    # -------------------------------------------------------------------------
    # Operator input
    # -------------------------------------------------------------------------
    
    def set_card_number(self, value: str):
        """Operator typed into the field"""
        self.card_number = value
        self.field_error = None
    
    def submit(self, value: Optional[str] = None) -> bool:
        """Validate and confirm. Returns True if on_confirm was called."""
        value = (self.card_number if value is None else value or "").strip()
        
        if not value:
            self.field_error = EMPTY_INPUT_ERROR
            return False
        if not is_valid_card_number(value):
            self.field_error = INVALID_INPUT_ERROR
            return False
        
        self.field_error = None
        self.on_confirm(value)
        return True


# =============================================================================
# Event watcher
# =============================================================================

async def watch(url: str = config.BRIDGE_URL) -> int:
    """Log bridge events until the bridge goes away"""
    controller: Optional[CardSessionController] = None
    
    def log_update(event, data):
        logger.info(f"{event}: {data}")
        if controller.error:
            logger.warning(f"NFC error: {controller.error}")
        if controller.status_message:
            logger.info(controller.status_message)
    
    controller = CardSessionController(on_confirm=lambda number: None, url=url, on_update=log_update)
    
    logger.info(f"Connecting to NFC bridge at {url}...")
    if not await controller.open():
        logger.error(controller.error)
        return 1
    
    logger.info("Connected. Waiting for NFC readers and cards (Ctrl+C to exit)")
    try:
        await controller.wait_closed()
    finally:
        await controller.close()
    return 0


def run():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
    )
    url = sys.argv[1] if len(sys.argv) > 1 else config.BRIDGE_URL
    try:
        sys.exit(asyncio.run(watch(url)))
    except KeyboardInterrupt:
        print("\nExiting NFC bridge watch.")


if __name__ == "__main__":
    run()

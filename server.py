"""
U-Pass NFC Bridge Server
========================
Bridges ACS NFC readers on this machine to the U-Pass manager web UI.
Detected U-Pass card numbers are pushed to every connected browser over
WebSocket; /api/readers and /api/status report bridge health over HTTP.

Port: localhost:3001 (NFC_BRIDGE_PORT)
"""

import asyncio
import errno
import logging
import sys

try:
    from websockets.asyncio.server import serve
except ImportError:
    print("ERROR: websockets not installed")
    print("Run: pip install websockets")
    sys.exit(1)

import config
from bridge import BridgeService
from readers.monitor import PCSCMonitor, PCSCUnavailableError
from readers.utils import READER_NAME_FILTER

logger = logging.getLogger(__name__)


def setup_logging(level: str = config.LOG_LEVEL, log_file: str = config.LOG_FILE):
    """Console logging, plus a log file unless log_file is empty"""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
    
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


async def serve_bridge(bridge: BridgeService, monitor: PCSCMonitor, host: str, port: int):
    """Serve until cancelled"""
    async with serve(bridge.handler, host, port, process_request=bridge.process_request):
        logger.info(f"NFC Bridge server running on port {port}")
        logger.info("API endpoints:")
        logger.info(f"- GET http://{host}:{port}/api/readers")
        logger.info(f"- GET http://{host}:{port}/api/status")
        await asyncio.gather(bridge.run(), monitor.run(bridge.manager))


async def main(host: str = config.HOST, port: int = config.PORT) -> int:
    monitor = PCSCMonitor(poll_interval=config.POLL_INTERVAL)
    try:
        monitor.establish()
    except PCSCUnavailableError as e:
        logger.error(f"Failed to initialize PC/SC: {e}")
        logger.error("Make sure PC/SC drivers are installed and the PC/SC service is running")
        return 1
    
    bridge = BridgeService(connect=monitor.connect_card, card_timeout=config.CARD_TIMEOUT)
    
    print("=" * 60)
    print(f"  U-Pass NFC Bridge v{BridgeService.VERSION}")
    print("=" * 60)
    print(f"  URL     : ws://{host}:{port}")
    print(f"  Readers : names containing '{READER_NAME_FILTER}'")
    print(f"  Timeout : {config.CARD_TIMEOUT or 'none'}")
    print("=" * 60)
    print()
    
    try:
        await serve_bridge(bridge, monitor, host, port)
    except OSError as e:
        if e.errno == errno.EADDRINUSE:
            logger.error(f"Port {port} is already in use. Please choose a different port or stop the other process.")
        else:
            logger.error(f"Server error: {e}")
        return 1
    finally:
        await bridge.close()
        monitor.close()
    return 0


def run():
    setup_logging()
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nServer stopped.")


if __name__ == "__main__":
    run()

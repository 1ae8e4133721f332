"""
NFC Bridge Configuration
========================
Values can be overridden from the environment or a local .env file.
"""

import os

from dotenv import load_dotenv

load_dotenv()

# WebSocket / HTTP server settings
HOST = os.getenv("NFC_BRIDGE_HOST", "localhost")
PORT = int(os.getenv("NFC_BRIDGE_PORT", os.getenv("PORT", "3001")))

# Endpoint the session client connects to
BRIDGE_URL = os.getenv("NFC_BRIDGE_URL", f"ws://{HOST}:{PORT}")

# Longest wait for one PC/SC status call, in seconds
POLL_INTERVAL = float(os.getenv("NFC_BRIDGE_POLL_INTERVAL", "0.25"))

# Limit for each card connect/transmit call. Unset means wait for the
# middleware as long as it takes.
_card_timeout = os.getenv("NFC_BRIDGE_CARD_TIMEOUT")
CARD_TIMEOUT = float(_card_timeout) if _card_timeout else None

# Logging
LOG_LEVEL = os.getenv("NFC_BRIDGE_LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("NFC_BRIDGE_LOG_FILE", "nfc_bridge.log")

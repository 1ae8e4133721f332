"""
NFC Card Readers Module
=======================
PC/SC reader handling for the U-Pass bridge.

- apdu     GET UID command
- upass    U-Pass card number codec
- manager  Reader registry and card-read state machine
- monitor  pyscard polling of the PC/SC resource manager
"""

from .apdu import APDU
from .manager import ReaderHandle, ReaderManager, TransportState
from .upass import format_card_number, get_checksum, is_valid_card_number
from .utils import READER_NAME_FILTER, SMARTCARD_AVAILABLE, is_supported_reader

__all__ = [
    'APDU',
    'ReaderHandle',
    'ReaderManager',
    'TransportState',
    'format_card_number',
    'get_checksum',
    'is_valid_card_number',
    'READER_NAME_FILTER',
    'SMARTCARD_AVAILABLE',
    'is_supported_reader',
]

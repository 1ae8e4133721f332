"""
APDU Commands for NFC card communication.
"""

from typing import List


class APDU:
    """Common APDU commands for NFC cards"""
    
    # PC/SC pseudo-APDU, answered by the reader itself (ACS ACR122U etc.)
    GET_UID: List[int] = [0xFF, 0xCA, 0x00, 0x00, 0x00]
    
    # Trailing status word appended to every response
    SW_LENGTH = 2
    SW_SUCCESS = (0x90, 0x00)
    
    @staticmethod
    def response_bytes(data: List[int], sw1: int, sw2: int) -> bytes:
        """Rebuild the raw response buffer (data followed by SW1 SW2)"""
        return bytes(data) + bytes([sw1, sw2])

"""
U-Pass Card Number Codec
========================
Turns the raw GET UID response of a U-Pass card into the 20-digit card
number printed on the card and stored by the U-Pass manager.

The transform matches the legacy checksum algorithm bit-for-bit:

    raw response   04 12 34 56 90 00
    payload        12 34 56              (first byte and status word dropped)
    integer        0x123456 = 1193046
    body           0167 000000001193046
    card number    0167 000000001193046 7  (checksum digit)

Nothing here raises: every failure path returns an empty string.
"""

import re
from typing import Iterable, Sequence, Union

# Card numbers are "0167" + 15 decimal digits + 1 checksum digit
PREFIX = "0167"
BODY_DIGITS = 15
CARD_NUMBER_LENGTH = len(PREFIX) + BODY_DIGITS + 1
MAX_BODY = 10 ** BODY_DIGITS - 1

DELTA = [0, 1, 2, 3, 4, -4, -3, -2, -1, 0]

# Bytes dropped from the front / back of the response before decoding
HEAD_BYTES = 1
TAIL_BYTES = 2
MIN_RESPONSE_LENGTH = HEAD_BYTES + TAIL_BYTES

CARD_NUMBER_PATTERN = re.compile(r"[0-9]{20}")

RawBytes = Union[bytes, bytearray, Sequence[int]]


def bytes_to_hex_string(data: Iterable[int]) -> str:
    """Uppercase hex, two digits per byte, no separators"""
    return ''.join(f'{b:02X}' for b in data)


def hex_to_int(hex_str: str) -> int:
    """
    Interpret a hex string as one unsigned integer, least significant
    digit first. Characters that are not hex digits contribute nothing.
    """
    value = 0
    for i, char in enumerate(reversed(hex_str)):
        try:
            digit = int(char, 16)
        except ValueError:
            continue
        value += digit * 16 ** i
    return value


def get_checksum(value: str) -> int:
    """
    Checksum digit for a string of decimal digits.
    
    Sum every digit, then add DELTA[digit] for every second digit
    walking back from the last one.
    """
    total = sum(int(char) for char in value)
    
    for i in range(len(value) - 1, -1, -2):
        total += DELTA[int(value[i])]
    
    checksum = 10 - (total % 10)
    return 0 if checksum == 10 else checksum


def format_card_number(data: RawBytes) -> str:
    """
    Decode a raw GET UID response into a canonical card number.
    
    Args:
        data: Response buffer including the trailing status word
        
    Returns:
        20-digit card number, or "" when the data is unusable
    """
    if not data or len(data) < MIN_RESPONSE_LENGTH:
        return ""
    
    payload = data[HEAD_BYTES:len(data) - TAIL_BYTES]
    try:
        hex_str = bytes_to_hex_string(payload)
    except (TypeError, ValueError):
        return ""
    if not hex_str:
        return ""
    
    value = hex_to_int(hex_str)
    # Zero is not a card, and UIDs too long for the printed number
    # cannot be represented
    if value == 0 or value > MAX_BODY:
        return ""
    
    body = PREFIX + str(value).rjust(BODY_DIGITS, '0')
    return f"{body}{get_checksum(body)}"


def is_valid_card_number(value: str) -> bool:
    """True when value has the canonical 20-digit shape"""
    return isinstance(value, str) and CARD_NUMBER_PATTERN.fullmatch(value) is not None

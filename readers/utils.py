"""
Shared utilities and dependency checks for card readers.
"""

import logging

logger = logging.getLogger(__name__)

# Only readers whose PC/SC name contains this are tracked by the bridge
READER_NAME_FILTER = "ACS"

# Check for pyscard
try:
    from smartcard.System import readers
    SMARTCARD_AVAILABLE = True
except ImportError:
    SMARTCARD_AVAILABLE = False
    readers = None
    logger.warning("pyscard not installed - PC/SC access disabled")


def is_supported_reader(name: str) -> bool:
    """Case-sensitive vendor filter on the reader name"""
    return bool(name) and READER_NAME_FILTER in name


def get_readers():
    """Get list of available card readers"""
    if not SMARTCARD_AVAILABLE:
        return []
    try:
        return readers()
    except Exception as e:
        logger.error(f"Error getting readers: {e}")
        return []

"""
NFC Reader Check
================
Checks if this machine is ready to run the U-Pass NFC bridge without
starting the server: PC/SC service, card readers, libraries, port.

Usage:
    python check_system.py            # run checks and exit
    python check_system.py --watch    # then log reader/card events until Ctrl+C
"""

import asyncio
import logging
import socket
import sys

import config
from events import EventBus
from readers.manager import ReaderManager
from readers.monitor import PCSCMonitor, PCSCError, PCSCUnavailableError
from readers.utils import READER_NAME_FILTER, SMARTCARD_AVAILABLE, is_supported_reader

CRITICAL_CHECKS = ['pyscard', 'pcsc_service', 'readers']
STATUS_ICONS = {True: "✓", False: "✗"}


def check_python():
    """Check Python version"""
    print(f"  Python: {sys.version.split()[0]}")
    if sys.version_info >= (3, 10):
        print("  ✓ Python version OK")
        return True
    print("  ✗ Python 3.10+ required")
    return False


def check_pyscard():
    """Check if pyscard is importable"""
    print("\n[PC/SC Library]")
    if SMARTCARD_AVAILABLE:
        print("  ✓ pyscard library loaded")
        return True
    print("  ✗ pyscard not installed")
    print("  → Run: pip install pyscard")
    return False


def check_pcsc_service(monitor: PCSCMonitor):
    """Check the PC/SC resource manager answers"""
    print("\n[PC/SC Service]")
    try:
        monitor.establish()
    except PCSCUnavailableError as e:
        print(f"  ✗ Failed to initialize PC/SC: {e}")
        print("  → Make sure PC/SC drivers are installed and the PC/SC service is running")
        return False
    print("  ✓ PC/SC initialized successfully")
    return True


def check_readers(monitor: PCSCMonitor):
    """List readers and which of them the bridge will use"""
    print("\n[Card Readers]")
    if monitor.hcontext is None:
        print("  ? Skipped (no PC/SC context)")
        return None
    
    try:
        names = monitor.list_reader_names()
    except PCSCError as e:
        print(f"  ✗ Error listing readers: {e}")
        return False
    
    if not names:
        print("  ✗ No NFC readers detected")
        print("  → Please make sure your NFC reader is properly connected")
        return False
    
    print(f"  Found {len(names)} reader(s):")
    supported = 0
    for name in names:
        if is_supported_reader(name):
            supported += 1
            print(f"    ✓ {name}")
        else:
            print(f"    ⚠ {name} (not an {READER_NAME_FILTER} reader, ignored by the bridge)")
    
    if supported == 0:
        print(f"  ✗ No {READER_NAME_FILTER} reader connected")
        return False
    return True


def check_websockets():
    """Check if websockets is available"""
    print("\n[WebSocket Library]")
    try:
        import websockets
        print(f"  ✓ websockets {websockets.__version__}")
        return True
    except ImportError:
        print("  ✗ websockets not installed")
        return False


def check_port(host: str = config.HOST, port: int = config.PORT):
    """Check if the bridge port is free"""
    print(f"\n[Port {port}]")
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(1)
            result = sock.connect_ex((host, port))
    except OSError as e:
        print(f"  ? Error checking port: {e}")
        return None
    
    if result == 0:
        print(f"  ⚠ Port {port} is in use (bridge may already be running)")
    else:
        print(f"  ✓ Port {port} is available")
    return True


def summarize(results):
    """(all_ok, critical_ok) for a dict of check name -> True/False/None"""
    all_ok = all(status is True for status in results.values())
    critical_ok = not any(
        results.get(name) is False for name in CRITICAL_CHECKS
    )
    return all_ok, critical_ok


async def watch_readers(monitor: PCSCMonitor):
    """Run the reader manager and print every event it produces"""
    bus = EventBus()
    queue = bus.subscribe()
    manager = ReaderManager({}, bus, connect=monitor.connect_card)
    task = asyncio.create_task(monitor.run(manager))
    
    print("\nWatching readers. Place a U-Pass card on the reader (Ctrl+C to exit)\n")
    try:
        while True:
            event = await queue.get()
            print(f"  {event.name}: {event.payload()}")
    finally:
        task.cancel()
        await manager.close()


def main():
    print("=" * 60)
    print("  NFC Reader Check")
    print("=" * 60)
    
    monitor = PCSCMonitor()
    results = {}
    
    print("\n[Python Environment]")
    results['python'] = check_python()
    results['pyscard'] = check_pyscard()
    results['pcsc_service'] = check_pcsc_service(monitor) if SMARTCARD_AVAILABLE else False
    results['readers'] = check_readers(monitor)
    results['websockets'] = check_websockets()
    results['port'] = check_port()
    
    print("\n" + "=" * 60)
    print("  SUMMARY")
    print("=" * 60)
    
    for name, status in results.items():
        print(f"  {STATUS_ICONS.get(status, '?')} {name}")
    
    all_ok, critical_ok = summarize(results)
    print("\n" + "-" * 60)
    
    if all_ok:
        print("  ✓ Your NFC reader is properly recognized by the system")
    elif critical_ok:
        print("  ⚠ System has minor issues but may work")
    else:
        print("  ✗ System is NOT ready - fix critical issues above")
    
    print("=" * 60)
    
    if '--watch' in sys.argv and monitor.hcontext is not None:
        logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(levelname)s - %(message)s')
        try:
            asyncio.run(watch_readers(monitor))
        except KeyboardInterrupt:
            print("\nExiting NFC reader check")
    
    monitor.close()
    return 0 if critical_ok else 1


if __name__ == "__main__":
    sys.exit(main())

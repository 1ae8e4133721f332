"""
PC/SC Reader Monitor
====================
Watches the PC/SC resource manager through pyscard and feeds reader
arrivals, removals and state bitmasks into a ReaderManager.

Each poll blocks in SCardGetStatusChange with the last seen event state of
every reader as its current state, so the call returns as soon as anything
changes. Where the middleware supports it, the PnP notification pseudo
reader wakes the call on reader arrival too.

The blocking scard calls run in a dedicated single thread; everything that
touches the manager happens back on the event loop.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List

import config

from .manager import STATE_PRESENT
from .utils import SMARTCARD_AVAILABLE, get_readers

if SMARTCARD_AVAILABLE:
    from smartcard import scard

logger = logging.getLogger(__name__)

PNP_NOTIFICATION = "\\\\?PnP?\\Notification"

STATE_CHANGED = 0x0002


class PCSCUnavailableError(Exception):
    """PC/SC context cannot be established (service down, no driver)"""


class PCSCError(Exception):
    """A PC/SC call failed at runtime"""


def _error_message(hresult) -> str:
    try:
        return scard.SCardGetErrorMessage(hresult)
    except Exception:
        return f"PC/SC error 0x{hresult & 0xFFFFFFFF:08X}"


def event_count(state: int) -> int:
    """Insert/remove counter kept by the middleware in the high word"""
    return (state >> 16) & 0xFFFF


class PCSCMonitor:
    """Watches the readers attached to this host"""
    
    def __init__(self, poll_interval: float = config.POLL_INTERVAL):
        """
        Args:
            poll_interval: Longest time one status call blocks, and the
                           pause between retries while PC/SC is failing
        """
        self.poll_interval = poll_interval
        self.hcontext = None
        self.failing = False
        self.pnp_supported = False
        self._states: Dict[str, int] = {}
        self._pnp_state = 0
        self._seen: Dict[str, int] = {}
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pcsc_monitor")
    
    @property
    def timeout_ms(self) -> int:
        return int(self.poll_interval * 1000)
    
    # -------------------------------------------------------------------------
    # Context
    # -------------------------------------------------------------------------
    
    def establish(self):
        """Open the PC/SC context. Raises PCSCUnavailableError."""
        if not SMARTCARD_AVAILABLE:
            raise PCSCUnavailableError("pyscard not installed")
        
        try:
            hresult, hcontext = scard.SCardEstablishContext(scard.SCARD_SCOPE_USER)
        except scard.error as e:
            raise PCSCUnavailableError(str(e)) from e
        
        if hresult != scard.SCARD_S_SUCCESS:
            raise PCSCUnavailableError(_error_message(hresult))
        
        self.hcontext = hcontext
        self._states = {}
        self._pnp_state = 0
        self.pnp_supported = self._check_pnp()
        logger.info("PC/SC initialized successfully")
    
    def _check_pnp(self) -> bool:
        try:
            hresult, new_states = scard.SCardGetStatusChange(
                self.hcontext, 0, [(PNP_NOTIFICATION, scard.SCARD_STATE_UNAWARE)]
            )
        except scard.error:
            return False
        
        if hresult not in (scard.SCARD_S_SUCCESS, scard.SCARD_E_TIMEOUT):
            logger.info("PC/SC reader notifications not supported, polling reader list")
            return False
        for _name, event_state, _atr in new_states:
            self._pnp_state = event_state & ~STATE_CHANGED
        return True
    
    def release(self):
        if self.hcontext is None or not SMARTCARD_AVAILABLE:
            return
        try:
            scard.SCardReleaseContext(self.hcontext)
        except scard.error as e:
            logger.warning(f"Error releasing PC/SC context: {e}")
        self.hcontext = None
    
    # -------------------------------------------------------------------------
    # Blocking calls (executor thread)
    # -------------------------------------------------------------------------
    
    def list_reader_names(self) -> List[str]:
        hresult, names = scard.SCardListReaders(self.hcontext, [])
        if hresult == scard.SCARD_E_NO_READERS_AVAILABLE:
            return []
        if hresult != scard.SCARD_S_SUCCESS:
            raise PCSCError(_error_message(hresult))
        return list(names)
    
    def poll(self) -> Dict[str, int]:
        """
        Wait up to poll_interval for a change, then return the event state
        bitmask of every reader keyed by reader name.
        """
        if self.hcontext is None:
            try:
                self.establish()
            except PCSCUnavailableError as e:
                raise PCSCError(str(e)) from e
        
        try:
            names = self.list_reader_names()
            states = [(name, self._states.get(name, scard.SCARD_STATE_UNAWARE)) for name in names]
            if self.pnp_supported:
                states.append((PNP_NOTIFICATION, self._pnp_state))
            if not states:
                self._states = {}
                return {}
            
            hresult, new_states = scard.SCardGetStatusChange(self.hcontext, self.timeout_ms, states)
        except scard.error as e:
            raise PCSCError(str(e)) from e
        
        if hresult == scard.SCARD_E_TIMEOUT:
            return {name: self._states.get(name, 0) for name in names}
        if hresult == scard.SCARD_E_UNKNOWN_READER:
            # A reader went away between listing and waiting
            return {name: state for name, state in self._states.items() if name in names}
        if hresult != scard.SCARD_S_SUCCESS:
            raise PCSCError(_error_message(hresult))
        
        snapshot = {}
        for name, event_state, _atr in new_states:
            event_state &= ~STATE_CHANGED
            if name == PNP_NOTIFICATION:
                self._pnp_state = event_state
            else:
                snapshot[name] = event_state
        self._states = dict(snapshot)
        return snapshot
    
    def connect_card(self, reader_name: str):
        """Shared-mode connection that leaves the card powered on disconnect"""
        for reader in get_readers():
            if str(reader) == reader_name:
                connection = reader.createConnection()
                connection.connect(
                    mode=scard.SCARD_SHARE_SHARED,
                    disposition=scard.SCARD_LEAVE_CARD,
                )
                return connection
        raise PCSCError(f"Reader not found: {reader_name}")
    
    # -------------------------------------------------------------------------
    # Event loop side
    # -------------------------------------------------------------------------
    
    def apply(self, manager, snapshot: Dict[str, int]):
        """Diff a poll result against the previous one and notify the manager"""
        for name in sorted(set(self._seen) - set(snapshot)):
            manager.remove_reader(name)
        
        for name, state_mask in snapshot.items():
            if name not in self._seen:
                manager.add_reader(name)
            else:
                self._replay_missed(manager, name, self._seen[name], state_mask)
            manager.update_status(name, state_mask)
        
        self._seen = dict(snapshot)
    
    def _replay_missed(self, manager, name: str, previous: int, current: int):
        """
        A card swapped between two status calls leaves the present bit set
        but moves the event counter by two or more. Report the removal so
        the new card gets read.
        """
        if not (previous & current & STATE_PRESENT) or not event_count(previous):
            return
        if event_count(current) - event_count(previous) >= 2:
            logger.info(f"Card replaced on {name} between status calls")
            manager.update_status(name, current & ~STATE_PRESENT)
    
    def on_failure(self, manager, error: Exception):
        """Runtime PC/SC failure: reported once per failure streak"""
        if self.failing:
            return
        self.failing = True
        logger.error(f"PCSC error: {error}")
        manager.report_error("PCSC error", str(error))
        # A stopped service invalidates the context, retry from scratch
        self.release()
    
    async def run(self, manager):
        loop = asyncio.get_running_loop()
        
        while True:
            try:
                snapshot = await loop.run_in_executor(self._executor, self.poll)
            except PCSCError as e:
                self.on_failure(manager, e)
                await asyncio.sleep(self.poll_interval)
                continue
            
            if self.failing:
                logger.info("PC/SC recovered")
                self.failing = False
            self.apply(manager, snapshot)
            
            if not snapshot and not self.pnp_supported:
                # Nothing to block on, come back for the reader list later
                await asyncio.sleep(self.poll_interval)
            else:
                await asyncio.sleep(0)
    
    def close(self):
        self.release()
        self._executor.shutdown(wait=False)

"""Online/offline tracking: periodic probe plus explicit platform events."""
import logging
import threading
from typing import Callable, List, Optional

log = logging.getLogger('pos.network')


class NetworkMonitor:
    def __init__(self, probe: Callable[[], bool], interval: float = 5.0, initial: bool = False):
        self.probe = probe
        self.interval = interval
        self._online = initial
        self._lock = threading.Lock()
        self._listeners: List[Callable[[], None]] = []
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add_reconnect_listener(self, callback: Callable[[], None]) -> None:
        """``callback`` runs every time the device goes from offline to online."""
        self._listeners.append(callback)

    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def set_online(self, online: bool) -> None:
        """Record a connectivity change reported by the platform (or by a probe)."""
        with self._lock:
            was_online = self._online
            self._online = bool(online)
        if was_online == bool(online):
            return
        log.info('Network is now %s', 'online' if online else 'offline')
        if online:
            for callback in list(self._listeners):
                try:
                    callback()
                except Exception:
                    log.exception('Reconnect listener failed')

    def check_now(self) -> bool:
        try:
            online = bool(self.probe())
        except Exception as exc:
            log.debug('Connectivity probe raised: %s', exc)
            online = False
        self.set_online(online)
        return online

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.check_now()
            self._stop.wait(self.interval)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name='network-monitor', daemon=True)
        self._thread.start()
        log.info('Network monitor started (interval=%ss)', self.interval)

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.interval + 1)
            self._thread = None

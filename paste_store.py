"""
In-memory paste storage shared by every request handler
"""

import logging
import threading
from collections import OrderedDict
from typing import List, NamedTuple, Optional, Set

logger = logging.getLogger("devbin")

DEFAULT_DEVICE_PASTE_LIMIT = 2


class Paste(NamedTuple):
    content: bytes
    owner: str


class ReadWriteLock:
    """Many readers or one writer. Waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writing or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if not self._readers:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writing or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writing = True

    def release_write(self) -> None:
        with self._cond:
            self._writing = False
            self._cond.notify_all()

    def read(self) -> "_Held":
        return _Held(self.acquire_read, self.release_read)

    def write(self) -> "_Held":
        return _Held(self.acquire_write, self.release_write)


class _Held:
    def __init__(self, acquire, release):
        self._acquire = acquire
        self._release = release

    def __enter__(self):
        self._acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self._release()
        return False


class PasteStore:
    """Pastes in insertion order (oldest first), keyed by paste id.

    Every device keeps at most ``device_paste_limit`` pastes. The limit is
    enforced when that device stores a new paste: its oldest pastes are
    dropped to make room. Nothing is evicted on a timer.
    """

    def __init__(self, device_paste_limit: int = DEFAULT_DEVICE_PASTE_LIMIT):
        if device_paste_limit < 1:
            raise ValueError(f"device_paste_limit must be at least 1, got {device_paste_limit}")
        self.device_paste_limit = device_paste_limit
        self._entries: "OrderedDict[str, Paste]" = OrderedDict()
        self._lock = ReadWriteLock()

    def insert(self, paste_id: str, content: bytes, owner: str) -> None:
        """Store a paste as the newest entry for its owner.

        An existing paste with the same id is replaced, whoever owns it.
        """
        with self._lock.write():
            evicted = self._purge_device_old(owner)
            self._entries.pop(paste_id, None)
            self._entries[paste_id] = Paste(content, owner)

        if evicted:
            logger.info(f"Evicted {len(evicted)} paste(s) for device {owner[:4]}...")

    def lookup(self, paste_id: str, owner: str) -> Optional[bytes]:
        """Return the content if the paste exists and belongs to owner, else None"""
        with self._lock.read():
            paste = self._entries.get(paste_id)
        if paste is None or paste.owner != owner:
            return None
        return paste.content

    def list_ids(self, owner: str) -> List[str]:
        """Return owner's paste ids, newest first"""
        with self._lock.read():
            ids = [paste_id for paste_id, paste in self._entries.items() if paste.owner == owner]
        ids.reverse()
        return ids

    def known_owners(self) -> Set[str]:
        """Return every device code that owns at least one live paste"""
        with self._lock.read():
            return {paste.owner for paste in self._entries.values()}

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)

    def _purge_device_old(self, owner: str) -> List[str]:
        # Caller holds the write lock.
        device_ids = [paste_id for paste_id, paste in self._entries.items() if paste.owner == owner]
        if len(device_ids) < self.device_paste_limit:
            return []

        to_remove = device_ids[:len(device_ids) - self.device_paste_limit + 1]
        for paste_id in to_remove:
            del self._entries[paste_id]
        return to_remove

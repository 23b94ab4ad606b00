"""Per-user advisory locks for timeline generation.

Entries are reference counted: a user's lock exists only while some caller
holds it or is trying to take it, so the registry does not grow with the
number of distinct users ever seen.
"""

import contextlib
import logging
import threading

from errors import GenerationInProgress

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0


class UserLockRegistry:
    def __init__(self):
        self._guard = threading.Lock()
        self._entries: dict[int, _Entry] = {}

    def try_acquire(self, user_id: int) -> bool:
        """Take the user's lock without waiting. Returns False if it is already held."""
        with self._guard:
            entry = self._entries.get(user_id)
            if entry is None:
                entry = self._entries[user_id] = _Entry()
            acquired = entry.lock.acquire(blocking=False)
            if acquired:
                entry.refs += 1
            elif entry.refs == 0:
                del self._entries[user_id]
        return acquired

    def release(self, user_id: int):
        with self._guard:
            entry = self._entries.get(user_id)
            if entry is None or not entry.lock.locked():
                raise RuntimeError(f"Lock for user {user_id} is not held")
            entry.lock.release()
            entry.refs -= 1
            if entry.refs == 0:
                del self._entries[user_id]

    def is_locked(self, user_id: int) -> bool:
        with self._guard:
            entry = self._entries.get(user_id)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    @contextlib.contextmanager
    def hold(self, user_id: int):
        """Hold the user's lock for the block, raising GenerationInProgress if it is taken."""
        if not self.try_acquire(user_id):
            raise GenerationInProgress(user_id)
        try:
            yield
        finally:
            self.release(user_id)

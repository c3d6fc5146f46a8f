"""
Push key generation.

Keys are 20 characters: 8 encode the creation time in milliseconds, 12 are
random. The alphabet is in ASCII order, so keys sort by creation time.
Within one generator, keys are strictly increasing even when several are
created in the same millisecond or the clock steps backwards.
"""

import secrets
import threading
import time

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"

_TIME_CHARS = 8
_RANDOM_CHARS = 12


class PushKeyGenerator:
    """Generates lexicographically time-ordered, collision-resistant keys."""

    def __init__(self):
        self._lock = threading.Lock()
        self._last_time = 0
        self._last_random = [0] * _RANDOM_CHARS

    def generate(self, now_ms: int | None = None) -> str:
        """
        Generate a new key.

        Args:
            now_ms: Creation time in epoch milliseconds. Defaults to now.

        Returns:
            A 20 character key.
        """
        now = int(time.time() * 1000) if now_ms is None else now_ms

        with self._lock:
            same_time = now <= self._last_time
            if same_time:
                self._increment_random()
                now = self._last_time
            else:
                self._last_time = now
                self._last_random = [
                    secrets.randbelow(len(PUSH_CHARS)) for _ in range(_RANDOM_CHARS)
                ]
            random_part = "".join(PUSH_CHARS[i] for i in self._last_random)

        time_chars = []
        for _ in range(_TIME_CHARS):
            time_chars.append(PUSH_CHARS[now % 64])
            now //= 64
        return "".join(reversed(time_chars)) + random_part

    def _increment_random(self) -> None:
        i = _RANDOM_CHARS - 1
        while i >= 0 and self._last_random[i] == 63:
            self._last_random[i] = 0
            i -= 1
        if i < 0:
            # All 64**12 values used in one millisecond: move to the next one.
            self._last_time += 1
            return
        self._last_random[i] += 1


_default_generator = PushKeyGenerator()


def generate_push_key(now_ms: int | None = None) -> str:
    """Generate a key with the process-wide generator."""
    return _default_generator.generate(now_ms)

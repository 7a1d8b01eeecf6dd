"""Chronologically ordered keys for store-generated children."""

from __future__ import annotations

import secrets
import time
from typing import Callable

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"

_TIME_CHARS = 8
_RANDOM_CHARS = 12


class PushKeyGenerator:
    """Generate keys whose lexicographic order matches generation order.

    The first eight characters encode the millisecond timestamp, the last
    twelve are random. Keys generated within the same millisecond reuse the
    previous random part incremented by one, so a single writer's keys are
    strictly increasing even when the wall clock stalls or steps back.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._last_ms = -1
        self._last_random = [0] * _RANDOM_CHARS

    def __call__(self) -> str:
        now_ms = int(self._clock() * 1000)
        if now_ms <= self._last_ms:
            now_ms = self._last_ms
            self._increment()
        else:
            self._last_ms = now_ms
            self._last_random = [secrets.randbelow(len(PUSH_CHARS)) for _ in range(_RANDOM_CHARS)]

        time_part = []
        remaining = now_ms
        for _ in range(_TIME_CHARS):
            time_part.append(PUSH_CHARS[remaining % 64])
            remaining //= 64
        return "".join(reversed(time_part)) + "".join(PUSH_CHARS[i] for i in self._last_random)

    def _increment(self) -> None:
        for index in range(_RANDOM_CHARS - 1, -1, -1):
            if self._last_random[index] != 63:
                self._last_random[index] += 1
                return
            self._last_random[index] = 0


generate_push_key = PushKeyGenerator()

"""Failed admin sign-in tracking.

Failures are counted per username inside a rolling window. Reaching the
limit locks that username for ``ADMIN_LOCKOUT_SECONDS``. A client address
has a looser ceiling of its own so one host cannot walk through usernames.
"""
from __future__ import annotations

import math
import os
import threading
import time
from collections import deque
from dataclasses import dataclass, field


ADMIN_LOGIN_WINDOW_SECONDS = int(os.environ.get("ADMIN_LOGIN_WINDOW_SECONDS") or "300")
ADMIN_LOGIN_MAX_FAILURES = int(os.environ.get("ADMIN_LOGIN_MAX_FAILURES") or "8")
ADMIN_LOGIN_MAX_FAILURES_PER_ADDRESS = int(os.environ.get("ADMIN_LOGIN_MAX_FAILURES_PER_ADDRESS") or "50")
ADMIN_LOCKOUT_SECONDS = int(os.environ.get("ADMIN_LOCKOUT_SECONDS") or "900")


@dataclass
class _Failures:
    stamps: deque = field(default_factory=deque)
    locked_until: float = 0.0

    def trim(self, now: float, window: int) -> None:
        while self.stamps and self.stamps[0] <= now - window:
            self.stamps.popleft()


class AdminLoginGuard:
    def __init__(self, window: int, max_failures: int, max_failures_per_address: int, lockout: int):
        self.window = max(window, 1)
        self.max_failures = max(max_failures, 1)
        self.max_failures_per_address = max(max_failures_per_address, 1)
        self.lockout = max(lockout, 1)
        self._lock = threading.Lock()
        self._by_username: dict[str, _Failures] = {}
        self._by_address: dict[str, _Failures] = {}

    def retry_after(self, address: str, username: str) -> int | None:
        """Seconds the caller must wait, or None when a sign-in may be attempted."""
        now = time.monotonic()
        with self._lock:
            account = self._by_username.get(username)
            if account is not None and account.locked_until > now:
                return max(1, math.ceil(account.locked_until - now))
            source = self._by_address.get(address)
            if source is not None:
                source.trim(now, self.window)
                if len(source.stamps) >= self.max_failures_per_address:
                    return max(1, math.ceil(source.stamps[0] + self.window - now))
        return None

    def failed(self, address: str, username: str) -> None:
        now = time.monotonic()
        with self._lock:
            source = self._by_address.setdefault(address, _Failures())
            source.trim(now, self.window)
            source.stamps.append(now)

            account = self._by_username.setdefault(username, _Failures())
            account.trim(now, self.window)
            account.stamps.append(now)
            if len(account.stamps) >= self.max_failures:
                account.locked_until = now + self.lockout
                account.stamps.clear()

    def succeeded(self, username: str) -> None:
        with self._lock:
            self._by_username.pop(username, None)

    def reset(self) -> None:
        with self._lock:
            self._by_username.clear()
            self._by_address.clear()


admin_login_guard = AdminLoginGuard(
    ADMIN_LOGIN_WINDOW_SECONDS,
    ADMIN_LOGIN_MAX_FAILURES,
    ADMIN_LOGIN_MAX_FAILURES_PER_ADDRESS,
    ADMIN_LOCKOUT_SECONDS,
)

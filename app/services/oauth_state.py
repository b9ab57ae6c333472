from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from app.core.security import generate_code_verifier, generate_token, now_utc

logger = logging.getLogger(__name__)

STATE_TTL = timedelta(minutes=10)
SWEEP_INTERVAL_SECONDS = 60.0


@dataclass(frozen=True)
class OAuthState:
    state: str
    code_verifier: str
    expires_at: datetime
    ip: Optional[str] = None


class OAuthStateStore:
    """One-time OAuth ``state`` values, each bound to a PKCE verifier."""

    def __init__(
        self,
        *,
        ttl: timedelta = STATE_TTL,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._ttl = ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._states: dict[str, OAuthState] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._states)

    def create(self, ip: Optional[str] = None) -> OAuthState:
        entry = OAuthState(
            state=generate_token(32),
            code_verifier=generate_code_verifier(),
            expires_at=self._clock() + self._ttl,
            ip=ip,
        )
        with self._lock:
            self._states[entry.state] = entry
        return entry

    def consume(self, state: str) -> Optional[OAuthState]:
        with self._lock:
            entry = self._states.pop(state, None)
        if entry is None or entry.expires_at < self._clock():
            return None
        return entry

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._states.items() if entry.expires_at < now]
            for key in expired:
                del self._states[key]
        return len(expired)

    async def _run_sweep(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self.sweep()
            except Exception:  # noqa: BLE001
                logger.exception("OAuth state sweep failed")

    def start(self) -> None:
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._run_sweep(), name="oauth-state-sweep")

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

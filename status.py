# status.py
"""
Bot liveness for status pages.

The bot reports a heartbeat every few seconds; a snapshot taken more than
OFFLINE_AFTER seconds after the last one reports offline and remembers when
that happened.
"""

from __future__ import annotations

import threading
import time
from typing import Optional

OFFLINE_AFTER = 10.0

_lock = threading.Lock()
_state = {
    "online": False,
    "ping": 0,
    "uptime": 0,
    "lastHeartbeat": None,
    "version": "1.0.0",
}
_last_offline: Optional[float] = None


def _now_ms() -> int:
    return int(time.time() * 1000)


def record_heartbeat(ping=0, uptime=0, version: Optional[str] = None) -> None:
    with _lock:
        _state.update(
            online=True,
            ping=int(ping or 0),
            uptime=int(uptime or 0),
            lastHeartbeat=_now_ms(),
            version=version or _state["version"],
        )


def snapshot() -> dict:
    global _last_offline
    now = _now_ms()
    with _lock:
        last = _state["lastHeartbeat"]
        if last is not None and now - last > OFFLINE_AFTER * 1000:
            if _state["online"]:
                _last_offline = now
            _state["online"] = False
        out = dict(_state)
        out["lastOffline"] = _last_offline
    return out


def reset() -> None:
    global _last_offline
    with _lock:
        _state.update(online=False, ping=0, uptime=0, lastHeartbeat=None)
        _last_offline = None

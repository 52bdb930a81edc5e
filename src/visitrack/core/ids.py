from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass, field


def new_instance_token(length: int = 8) -> str:
    """Random per-process token so ids from separate processes never collide."""
    return secrets.token_hex(length // 2)


@dataclass(slots=True)
class IdsService:
    instance: str = field(default_factory=new_instance_token)
    _counters: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def next_id(self, prefix: str) -> str:
        with self._lock:
            n = self._counters.get(prefix, 0) + 1
            self._counters[prefix] = n
        return f"{prefix}_{self.instance}_{n:08d}"

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class RolloutStatus:
    service: str
    state: str  # idle|rolling_out|stable|rolling_back|paused
    from_version: int | None
    to_version: int | None
    message: str = ""
    batch: int = 0
    batches: int = 0
    error: dict | None = None
    started_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)


class RuntimeState:
    """In-memory state shared by rollouts and routing."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.rr_index: dict[str, int] = {}  # key -> idx
        self.rollouts: dict[str, RolloutStatus] = {}  # service -> status

    def next_index(self, key: str, n: int) -> int:
        with self.lock:
            if n <= 0:
                return 0
            i = self.rr_index.get(key, 0) % n
            self.rr_index[key] = (i + 1) % n
            return i

    def upsert_rollout(self, st: RolloutStatus) -> None:
        with self.lock:
            st.updated_at = utc_now()
            self.rollouts[st.service] = st

    def get_rollout(self, service: str) -> RolloutStatus | None:
        with self.lock:
            return self.rollouts.get(service)

    def list_rollouts(self) -> list[RolloutStatus]:
        with self.lock:
            return [self.rollouts[k] for k in sorted(self.rollouts)]

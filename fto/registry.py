from __future__ import annotations

import json
from dataclasses import replace
from threading import Lock

from . import db
from .descriptor import ServiceSpec


class SpecRegistry:
    """Versioned store of submitted ServiceSpecs.

    A spec is immutable once submitted; an update is a new version. Submitting a
    spec identical to the newest version that has not failed is a no-op.
    """

    def __init__(self, persist: bool = True):
        self.persist = persist
        self._lock = Lock()
        self._history: dict[str, list[ServiceSpec]] = {}
        self._state: dict[tuple[str, int], str] = {}
        self._removed: set[str] = set()

    def submit(self, spec: ServiceSpec) -> tuple[ServiceSpec, bool]:
        """Register a spec; returns (versioned spec, changed)."""
        with self._lock:
            history = self._history.setdefault(spec.name, [])
            self._removed.discard(spec.name)
            # Compare with the newest version that did not fail: after a rollback
            # that is the active one, so re-applying it changes nothing.
            current = next((s for s in reversed(history) if self._state.get((spec.name, s.version)) != "failed"), None)
            if current is not None and current.fingerprint() == spec.fingerprint():
                return current, False
            versioned = replace(spec, version=(history[-1].version + 1) if history else 1)
            history.append(versioned)
            self._state[(spec.name, versioned.version)] = "candidate"
        if self.persist:
            db.insert_version(
                spec.name, versioned.version, versioned.fingerprint(), json.dumps(versioned.to_dict()), "candidate"
            )
        return versioned, True

    def mark(self, name: str, version: int, state: str) -> None:
        with self._lock:
            if state == "active":
                for (svc, ver), st in list(self._state.items()):
                    if svc == name and ver != version and st == "active":
                        self._state[(svc, ver)] = "retired"
                        if self.persist:
                            db.set_version_state(svc, ver, "retired")
            self._state[(name, version)] = state
        if self.persist:
            db.set_version_state(name, version, state)

    def state(self, name: str, version: int) -> str | None:
        with self._lock:
            return self._state.get((name, version))

    def latest(self, name: str) -> ServiceSpec | None:
        with self._lock:
            history = self._history.get(name)
            return history[-1] if history else None

    def get(self, name: str, version: int) -> ServiceSpec | None:
        with self._lock:
            for s in self._history.get(name, []):
                if s.version == version:
                    return s
        return None

    def active(self, name: str) -> ServiceSpec | None:
        with self._lock:
            for s in reversed(self._history.get(name, [])):
                if self._state.get((name, s.version)) == "active":
                    return s
        return None

    def history(self, name: str) -> list[ServiceSpec]:
        with self._lock:
            return list(self._history.get(name, []))

    def services(self) -> list[str]:
        with self._lock:
            return sorted(n for n in self._history if n not in self._removed)

    def remove(self, name: str) -> None:
        with self._lock:
            self._removed.add(name)

    def is_removed(self, name: str) -> bool:
        with self._lock:
            return name in self._removed

    def load(self) -> int:
        """Restore history from the database; returns the number of versions loaded."""
        rows = sorted(db.list_versions(), key=lambda r: (r.service_id, r.version))
        count = 0
        with self._lock:
            for r in rows:
                spec = ServiceSpec.from_dict(json.loads(r.spec_json))
                self._history.setdefault(spec.name, []).append(spec)
                self._state[(spec.name, spec.version)] = r.state
                count += 1
        return count

from __future__ import annotations

from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
import logging
from threading import Lock

from sessionswap.core.exceptions import UnavailableError

logger = logging.getLogger(__name__)


@dataclass
class _Slot:
    lock: Lock = field(default_factory=Lock)
    holders: int = 0


class KeyedLockRegistry:
    """
    One mutex per identity ("template:<id>", "request:<id>", ...).

    Mutations on different keys never contend; a guard over several keys takes
    them in sorted order so two guards can never wait on each other. A key's
    mutex is dropped once no guard holds or waits on it.
    """

    def __init__(self) -> None:
        self._slots: dict[str, _Slot] = {}
        self._registry_lock = Lock()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._slots)

    def _checkout(self, key: str) -> _Slot:
        with self._registry_lock:
            slot = self._slots.get(key)
            if slot is None:
                slot = self._slots[key] = _Slot()
            slot.holders += 1
            return slot

    def _checkin(self, key: str, slot: _Slot) -> None:
        with self._registry_lock:
            slot.holders -= 1
            if slot.holders <= 0 and self._slots.get(key) is slot:
                del self._slots[key]

    @contextmanager
    def guard(self, *keys: str, timeout: float = 10.0) -> Iterator[None]:
        ordered = sorted({key for key in keys if key})
        with ExitStack() as stack:
            for key in ordered:
                slot = self._checkout(key)
                stack.callback(self._checkin, key, slot)
                if not slot.lock.acquire(timeout=timeout):
                    logger.warning("Timed out after %.1fs waiting for guarded section %s", timeout, key)
                    raise UnavailableError(
                        "The schedule is busy, please retry shortly",
                        details={"lock": key, "timeout_seconds": timeout},
                    )
                stack.callback(slot.lock.release)
            yield

    def clear(self) -> None:
        with self._registry_lock:
            self._slots.clear()


_registry = KeyedLockRegistry()


def get_lock_registry() -> KeyedLockRegistry:
    return _registry


def clear_lock_registry() -> None:
    _registry.clear()


def template_key(template_id: str) -> str:
    return f"template:{template_id}"


def meeting_key(meeting_id: str) -> str:
    return f"meeting:{meeting_id}"


def request_key(request_id: str) -> str:
    return f"request:{request_id}"


def submission_key(requester_id: str, origin_id: str) -> str:
    return f"submission:{requester_id}:{origin_id}"

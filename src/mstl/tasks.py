# src/mstl/tasks.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, Generic, Iterable, TypeVar

T = TypeVar("T")
R = TypeVar("R")

_MISSING = object()


@dataclass
class TaskOutcome(Generic[T, R]):
    # Input order is preserved in both lists regardless of completion order.
    results: list[R] = field(default_factory=list)
    errors: list[tuple[T, Exception]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class BoundedTaskRunner:
    """
    One thread per item, admitted through a counting semaphore of `capacity` slots.

    Contract:
    - At most `capacity` task bodies run at the same time.
    - A task returning None contributes no result (e.g. "repository not present").
    - A task raising is recorded in `errors`; the other tasks still run.
    - No cancellation, no timeouts; run() returns once every task has finished.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        self.capacity = capacity

    def run(self, items: Iterable[T], fn: Callable[[T], R | None]) -> TaskOutcome[T, R]:
        items = list(items)
        slots: list[object] = [_MISSING] * len(items)
        failures: list[tuple[int, T, Exception]] = []
        lock = threading.Lock()
        gate = threading.BoundedSemaphore(self.capacity)

        def worker(idx: int, item: T) -> None:
            with gate:
                try:
                    value = fn(item)
                except Exception as e:  # noqa: BLE001 - collected and reported by the caller
                    with lock:
                        failures.append((idx, item, e))
                    return
            with lock:
                slots[idx] = value

        threads = [threading.Thread(target=worker, args=(i, it), daemon=True) for i, it in enumerate(items)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        failures.sort(key=lambda x: x[0])
        return TaskOutcome(
            results=[v for v in slots if v is not _MISSING and v is not None],  # type: ignore[misc]
            errors=[(item, e) for _, item, e in failures],
        )

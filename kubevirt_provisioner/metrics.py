from collections import Counter
from threading import Lock


# reported even before their first increment so scrapers see a stable set
ENGINE_COUNTERS = (
    "gateway_requests_total",
    "gateway_errors_total",
    "vm_create_total",
    "vm_update_total",
    "vm_delete_total",
    "overflow_secret_created_total",
    "lifecycle_errors_total",
)


class Metrics:
    def __init__(self, known: tuple[str, ...] = ENGINE_COUNTERS) -> None:
        self._lock = Lock()
        self._known = known
        self._counters: Counter[str] = Counter({key: 0 for key in known})

    def inc(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[key] += amount

    def get(self, key: str) -> int:
        with self._lock:
            return self._counters[key]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def reset(self) -> None:
        with self._lock:
            self._counters = Counter({key: 0 for key in self._known})


metrics = Metrics()

from collections import Counter, defaultdict
from threading import Lock
from typing import Counter as CounterType, DefaultDict, Dict

_metrics: CounterType[str] = Counter()
_per_discount: DefaultDict[int, CounterType[str]] = defaultdict(Counter)
_lock = Lock()


def _inc(key: str, discount_id: int | None = None) -> None:
    with _lock:
        _metrics[key] += 1
        if discount_id is not None:
            _per_discount[int(discount_id)][key] += 1


def record_redemption(discount_id: int | None = None) -> None:
    _inc("redemptions_recorded", discount_id)


def record_redemption_rejected(discount_id: int | None = None) -> None:
    _inc("redemptions_rejected", discount_id)


def record_redemption_duplicate(discount_id: int | None = None) -> None:
    _inc("redemptions_duplicate", discount_id)


def record_usage_history_cleared(discount_id: int | None = None) -> None:
    _inc("usage_history_cleared", discount_id)


def record_catalog_load() -> None:
    _inc("catalog_loads")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def snapshot_for_discount(discount_id: int) -> Dict[str, int]:
    """Ledger outcomes recorded for one discount; empty when it was never touched."""
    with _lock:
        counts = _per_discount.get(int(discount_id))
        return dict(counts) if counts else {}


def reset() -> None:
    with _lock:
        _metrics.clear()
        _per_discount.clear()

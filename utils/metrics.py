# User value: This file counts pipeline outcomes so operators can see upload, extraction and review health at a glance.
import logging
from collections import defaultdict
from typing import Dict, Tuple

logger = logging.getLogger("api.metrics")

_LabelKey = Tuple[Tuple[str, str], ...]

_counters: Dict[str, Dict[_LabelKey, float]] = defaultdict(lambda: defaultdict(float))
_timings: Dict[str, Dict[_LabelKey, list]] = defaultdict(lambda: defaultdict(list))

_MAX_SAMPLES = 500


def _label_key(labels: dict) -> _LabelKey:
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def incr(name: str, amount: float = 1, **labels) -> None:
    _counters[name][_label_key(labels)] += float(amount)


def observe_ms(name: str, value_ms: float, **labels) -> None:
    samples = _timings[name][_label_key(labels)]
    samples.append(float(value_ms))
    if len(samples) > _MAX_SAMPLES:
        del samples[: len(samples) - _MAX_SAMPLES]


# User value: exposes a stable JSON view of counters for dashboards and tests.
def snapshot() -> dict:
    counters = {
        name: [{"labels": dict(key), "value": value} for key, value in series.items()]
        for name, series in _counters.items()
    }
    timings = {}
    for name, series in _timings.items():
        rows = []
        for key, samples in series.items():
            if not samples:
                continue
            ordered = sorted(samples)
            rows.append(
                {
                    "labels": dict(key),
                    "count": len(ordered),
                    "avg_ms": round(sum(ordered) / len(ordered), 3),
                    "p95_ms": round(ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))], 3),
                }
            )
        timings[name] = rows
    return {"counters": counters, "timings": timings}


def counter_value(name: str, **labels) -> float:
    return _counters.get(name, {}).get(_label_key(labels), 0.0)


def reset() -> None:
    _counters.clear()
    _timings.clear()
    logger.debug("metrics_reset")

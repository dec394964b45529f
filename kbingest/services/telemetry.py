from __future__ import annotations

import threading
from collections import defaultdict


LabelKey = tuple[tuple[str, str], ...]

_lock = threading.Lock()
_counters: dict[str, dict[LabelKey, float]] = defaultdict(dict)
_gauges: dict[str, dict[LabelKey, float]] = defaultdict(dict)


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    # Sort labels so {"a": 1, "b": 2} and {"b": 2, "a": 1} hit the same series.
    if not labels:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def increment_counter(name: str, value: float = 1, labels: dict[str, str] | None = None) -> None:
    # Store counters for failure rates and ops dashboards.
    key = _label_key(labels)
    with _lock:
        series = _counters[name]
        series[key] = series.get(key, 0) + value


def set_gauge(name: str, value: float, labels: dict[str, str] | None = None) -> None:
    # Gauges hold the latest observed value per label set.
    with _lock:
        _gauges[name][_label_key(labels)] = float(value)


def counter_value(name: str, labels: dict[str, str] | None = None) -> float:
    with _lock:
        return _counters.get(name, {}).get(_label_key(labels), 0)


def gauge_value(name: str, labels: dict[str, str] | None = None) -> float | None:
    with _lock:
        return _gauges.get(name, {}).get(_label_key(labels))


def counters_snapshot() -> dict[str, dict[LabelKey, float]]:
    # Return a copy of all counters for metrics reporting.
    with _lock:
        return {name: dict(series) for name, series in _counters.items()}


def gauges_snapshot() -> dict[str, dict[LabelKey, float]]:
    with _lock:
        return {name: dict(series) for name, series in _gauges.items()}


def _format_labels(key: LabelKey) -> str:
    if not key:
        return ""
    rendered = ",".join(f'{name}="{value}"' for name, value in key)
    return "{" + rendered + "}"


def render_prometheus() -> str:
    # Plain text exposition format so any scraper can read the registry.
    lines: list[str] = []
    for kind, snapshot in (("counter", counters_snapshot()), ("gauge", gauges_snapshot())):
        for name in sorted(snapshot):
            lines.append(f"# TYPE {name} {kind}")
            for key, value in sorted(snapshot[name].items()):
                lines.append(f"{name}{_format_labels(key)} {value:g}")
    return "\n".join(lines) + ("\n" if lines else "")


def reset() -> None:
    # Tests reset the registry between cases.
    with _lock:
        _counters.clear()
        _gauges.clear()

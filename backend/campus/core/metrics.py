import re
from collections import defaultdict
from threading import Lock

LabelKey = tuple[tuple[str, str], ...]

METRIC_HELP: dict[str, str] = {
    "http_requests_total": "HTTP requests served by the API.",
    "http_errors_total": "HTTP responses rendered through an error handler.",
    "auth_login_total": "Login attempts by result.",
    "auth_register_total": "Registration attempts by result.",
    "workflow_transition_total": "Verification workflow transitions by action.",
    "admin_action_total": "Single admin actions by type.",
    "notifications_created_total": "Notification rows persisted.",
    "notifications_failed_total": "Notification rows that could not be persisted.",
    "side_effect_total": "Side effects dispatched by name and result.",
    "audit_write_total": "Audit log writes by result.",
    "password_reset_total": "Password reset requests and completions by result.",
}

_metrics_lock = Lock()
_counters: dict[str, dict[LabelKey, int]] = defaultdict(dict)


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def increment_counter(name: str, value: int = 1, **labels: str) -> None:
    key = _label_key(labels)
    with _metrics_lock:
        series = _counters[name]
        series[key] = series.get(key, 0) + int(value)


def counter_value(name: str, **labels: str) -> int:
    key = _label_key(labels)
    with _metrics_lock:
        return _counters.get(name, {}).get(key, 0)


def snapshot_metrics() -> dict[str, dict]:
    with _metrics_lock:
        return {
            metric_name: {
                "help": METRIC_HELP.get(metric_name, ""),
                "series": [{"labels": dict(label_key), "value": value} for label_key, value in series.items()],
            }
            for metric_name, series in _counters.items()
        }


def reset_metrics() -> None:
    with _metrics_lock:
        _counters.clear()


def _sanitize_metric_name(name: str) -> str:
    clean = re.sub(r"[^a-zA-Z0-9_:]", "_", name)
    if not re.match(r"^[a-zA-Z_:]", clean):
        clean = f"metric_{clean}"
    return clean


def _escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def prometheus_text() -> str:
    lines: list[str] = []
    with _metrics_lock:
        for raw_name in sorted(_counters):
            name = _sanitize_metric_name(raw_name)
            help_text = METRIC_HELP.get(raw_name)
            if help_text:
                lines.append(f"# HELP {name} {help_text}")
            lines.append(f"# TYPE {name} counter")
            for label_key, value in _counters[raw_name].items():
                if label_key:
                    labels = ",".join(f'{k}="{_escape_label_value(v)}"' for k, v in label_key)
                    lines.append(f"{name}{{{labels}}} {int(value)}")
                else:
                    lines.append(f"{name} {int(value)}")
    return "\n".join(lines) + "\n"

"""
Status Normalizer
Maps each provider's raw status/progress payload onto one diagnostic label,
an outcome class and a 0-100 progress value.

The label is informational (shown to users while a job runs). The outcome
decides the authoritative job transition in the orchestrator.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class Outcome(str, Enum):
    """Coarse class of a provider status."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class NormalizedStatus:
    label: str
    progress: Optional[int]
    outcome: Outcome

    @property
    def is_success(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @property
    def is_failure(self) -> bool:
        return self.outcome is Outcome.FAILURE


SUCCESS_LABELS = frozenset({"SUCCEEDED", "SUCCESS", "SUCCESSFUL", "COMPLETED", "COMPLETE", "DONE", "FINISHED"})
FAILURE_LABELS = frozenset({"FAILED", "FAILURE", "ERROR", "ERRORED", "CANCELED", "CANCELLED", "EXPIRED"})

# Numeric status codes, per provider
STATUS_CODE_TABLES: Dict[str, Dict[int, str]] = {
    "nodeodm": {
        10: "QUEUED",
        20: "RUNNING",
        30: "FAILED",
        40: "COMPLETED",
        50: "CANCELED",
    },
}

# Keys checked, in order, when a status arrives as an object
STATUS_OBJECT_KEYS = ("status", "state", "code", "name", "type", "value")

# Progress scale per provider; providers not listed are inferred per value
PROGRESS_SCALES = {
    "meshy": "percent",
    "nodeodm": "percent",
}


def normalize_progress(value: Any, scale: Optional[str] = None) -> Optional[int]:
    """
    Normalize a progress reading to an integer percentage in [0, 100].

    ``scale`` is "fraction" (0-1) or "percent" (0-100). When omitted, a
    value in (0, 1] or any non-integral value is read as a fraction and
    anything else as a percentage, so 0.42 -> 42, 1.5 -> 100, 150 -> 100.
    The inference ignores the JSON type: 1 and 1.0 both read as 100.

    Returns None for non-numeric input. Zero is a real reading, not "unknown".
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None

    if scale is None:
        if 0 < value <= 1 or not float(value).is_integer():
            scale = "fraction"
        else:
            scale = "percent"

    percent = value * 100 if scale == "fraction" else value
    return int(round(min(100.0, max(0.0, float(percent)))))


def status_label(provider: str, raw: Any) -> Optional[str]:
    """
    Coerce a raw status value into an uppercase label.

    Accepts a string, a numeric code (looked up in the provider's table) or
    an object carrying the status under one of ``STATUS_OBJECT_KEYS``.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        label = raw.strip().upper().replace(" ", "_").replace("-", "_")
        return label or None
    if isinstance(raw, (int, float)):
        if not math.isfinite(raw):
            return f"UNKNOWN_CODE_{raw}"
        code = int(raw)
        table = STATUS_CODE_TABLES.get(provider, {})
        return table.get(code, f"UNKNOWN_CODE_{code}")
    if isinstance(raw, dict):
        for key in STATUS_OBJECT_KEYS:
            if key in raw:
                label = status_label(provider, raw[key])
                if label:
                    return label
    return None


def classify(label: str) -> Outcome:
    if label in SUCCESS_LABELS:
        return Outcome.SUCCESS
    if label in FAILURE_LABELS:
        return Outcome.FAILURE
    return Outcome.RUNNING


def _raw_status(payload: Any) -> Any:
    """Find the status field in the shapes providers actually return."""
    if not isinstance(payload, dict):
        return payload
    for key in ("status", "state"):
        if payload.get(key) is not None:
            return payload[key]
    for container in ("data", "result"):
        nested = payload.get(container)
        if isinstance(nested, dict):
            for key in ("status", "state"):
                if nested.get(key) is not None:
                    return nested[key]
    return None


def _raw_progress(payload: Any) -> Any:
    if not isinstance(payload, dict):
        return None
    if "progress" in payload:
        return payload["progress"]
    for container in ("data", "result"):
        nested = payload.get(container)
        if isinstance(nested, dict) and "progress" in nested:
            return nested["progress"]
    return None


def normalize_status(provider: str, payload: Any) -> NormalizedStatus:
    """
    Interpret a provider payload.

    A payload with no recognizable status reads as still processing.
    """
    label = status_label(provider, _raw_status(payload)) or "PROCESSING"
    outcome = classify(label)
    progress = normalize_progress(_raw_progress(payload), PROGRESS_SCALES.get(provider))
    if outcome is Outcome.SUCCESS:
        progress = 100
    return NormalizedStatus(label=label, progress=progress, outcome=outcome)

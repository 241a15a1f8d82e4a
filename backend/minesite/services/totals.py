"""Shift totals aggregation over raw activity payloads."""

from __future__ import annotations

import math
import re
from collections import defaultdict
from typing import Any, Iterable, Mapping

# purpose: derive activity -> sub_activity -> metric totals from operator payloads
# inputs: iterable of payload mappings ({activity, sub_activity, values, loads?})
# outputs: nested dict of float totals, identical for any payload order
# status: production

NO_ACTIVITY = "(No Activity)"
NO_SUB_ACTIVITY = "(No Sub Activity)"

# Hauling fields replaced by their per-truck weighted figures; Trucks is also summed as entered
_HAULING_WEIGHTED_KEYS = {"Weight", "Distance"}
_TKM_SUB_ACTIVITIES = {"Production", "Development"}
_GROUND_SUPPORT_SUB_ACTIVITIES = {"Ground Support", "Rehab"}

_LEADING_NUMBER = re.compile(r"^\s*[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")
_NON_NUMERIC = re.compile(r"[^0-9.\-]")

ShiftTotals = dict[str, dict[str, dict[str, float]]]


def parse_number(value: Any) -> float | None:
    """Return the leading numeric value of ``value`` or ``None``.

    Accepts ints/floats and strings such as ``"12"``, ``" 3.5 "`` or
    ``"2.4m"``. Booleans, blanks, and non-finite values are rejected.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        match = _LEADING_NUMBER.match(str(value))
        if not match:
            return None
        number = float(match.group(0))
    if not math.isfinite(number):
        return None
    return number


def number_or_zero(value: Any) -> float:
    number = parse_number(value)
    return 0.0 if number is None else number


def lenient_number(value: Any) -> float | None:
    """Parse free-text quantities like ``"1,234 t"`` by dropping every non-numeric char."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    cleaned = _NON_NUMERIC.sub("", str(value))
    if not cleaned:
        return None
    try:
        number = float(cleaned)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def bolt_length(value: Any) -> float:
    text = "" if value is None else str(value)
    return number_or_zero(text.replace("m", ""))


def payload_values(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    values = payload.get("values")
    return values if isinstance(values, Mapping) else {}


def payload_keys(payload: Mapping[str, Any]) -> tuple[str, str]:
    activity = payload.get("activity") or NO_ACTIVITY
    sub_activity = payload.get("sub_activity") or payload.get("sub") or NO_SUB_ACTIVITY
    return str(activity), str(sub_activity)


def hauling_figures(payload: Mapping[str, Any]) -> tuple[float, float, float]:
    """Return ``(trucks, total_weight, distance)`` for one hauling payload.

    A list of individual loads wins over the legacy scalar ``Trucks``/``Weight``
    fields: weight is the sum of load weights and trucks the number of loads.
    """

    values = payload_values(payload)
    loads = payload.get("loads")
    distance = number_or_zero(values.get("Distance"))
    if isinstance(loads, list):
        trucks = float(len(loads))
        total_weight = sum(
            number_or_zero(load.get("weight", load.get("Weight")))
            for load in loads
            if isinstance(load, Mapping)
        )
    else:
        trucks = number_or_zero(values.get("Trucks"))
        total_weight = trucks * number_or_zero(values.get("Weight"))
    return trucks, total_weight, distance


def _coerce_payload(payload: Any) -> Mapping[str, Any]:
    if hasattr(payload, "model_dump"):
        return payload.model_dump()
    return payload if isinstance(payload, Mapping) else {}


def aggregate(payloads: Iterable[Any]) -> ShiftTotals:
    """Aggregate activity payloads into nested shift totals.

    Contributions are collected per metric and reduced with ``math.fsum`` so
    the result is bit-identical for every ordering of ``payloads``.
    """

    parts: dict[str, dict[str, dict[str, list[float]]]] = defaultdict(
        lambda: defaultdict(lambda: defaultdict(list))
    )
    for raw in payloads:
        payload = _coerce_payload(raw)
        activity, sub_activity = payload_keys(payload)
        values = payload_values(payload)
        bucket = parts[activity][sub_activity]

        for key, value in values.items():
            key = str(key)
            if activity == "Hauling" and key in _HAULING_WEIGHTED_KEYS:
                continue
            number = parse_number(value)
            if number is not None:
                bucket[key].append(number)

        if activity == "Hauling":
            trucks, total_weight, distance = hauling_figures(payload)
            bucket["Weight"].append(total_weight)
            bucket["Distance"].append(trucks * distance)
            bucket["Trucks"].append(trucks)
            if sub_activity in _TKM_SUB_ACTIVITIES:
                bucket["TKMs"].append(total_weight * distance)

        if activity == "Development" and sub_activity == "Face Drilling":
            bucket["Dev Drillm"].append(
                number_or_zero(values.get("No of Holes")) * number_or_zero(values.get("Cut Length"))
            )
        if activity == "Development" and sub_activity in _GROUND_SUPPORT_SUB_ACTIVITIES:
            bucket["GS Drillm"].append(
                number_or_zero(values.get("No. of Bolts")) * bolt_length(values.get("Bolt Length"))
            )

    return {
        activity: {
            sub: {metric: math.fsum(numbers) for metric, numbers in metrics.items()}
            for sub, metrics in subs.items()
        }
        for activity, subs in parts.items()
    }


def metric_total(totals: Mapping[str, Any], activity: str, sub_activity: str, metric: str) -> float:
    subs = totals.get(activity) or {}
    metrics = subs.get(sub_activity) or {}
    return number_or_zero(metrics.get(metric))

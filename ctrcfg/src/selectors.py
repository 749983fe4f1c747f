from __future__ import annotations

from collections.abc import Mapping
from typing import Any


def is_empty(selector: Mapping[str, Any] | None) -> bool:
    """Return True when *selector* has no requirements at all.

    A nil or empty selector matches nothing in this controller; callers must
    check this before calling :func:`matches`.
    """
    if not selector:
        return True
    return not selector.get("matchLabels") and not selector.get("matchExpressions")


def _expression_matches(expression: Mapping[str, Any], labels: Mapping[str, str]) -> bool:
    key = expression.get("key")
    operator = expression.get("operator")
    values = expression.get("values") or []
    if not key or not operator:
        raise ValueError(f"invalid selector expression: {dict(expression)!r}")

    if operator == "In":
        if not values:
            raise ValueError(f"operator In on {key!r} requires values")
        return key in labels and labels[key] in values
    if operator == "NotIn":
        if not values:
            raise ValueError(f"operator NotIn on {key!r} requires values")
        return key not in labels or labels[key] not in values
    if operator == "Exists":
        return key in labels
    if operator == "DoesNotExist":
        return key not in labels
    raise ValueError(f"unsupported selector operator {operator!r}")


def matches(selector: Mapping[str, Any] | None, labels: Mapping[str, str] | None) -> bool:
    """Evaluate a ``metav1.LabelSelector`` dictionary against a label set.

    Raises ``ValueError`` for malformed expressions.
    """
    labels = labels or {}
    if not selector:
        return True
    for key, value in (selector.get("matchLabels") or {}).items():
        if labels.get(key) != value:
            return False
    return all(
        _expression_matches(expression, labels)
        for expression in selector.get("matchExpressions") or []
    )

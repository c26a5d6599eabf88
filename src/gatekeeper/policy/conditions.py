"""
Condition checks for tool allowances.

A condition constrains a request parameter only when that parameter is
supplied: an absent parameter passes vacuously. Type mismatches are
failures, never exceptions.

Denial reasons name the condition and its configured bound only. The
request value is never echoed back, since reasons travel to the caller and
into the audit log.
"""

from typing import Any

from gatekeeper.schema import Condition, NumericBound, PathPrefix, StringSet


def check_condition(condition: Condition, params: dict[str, Any]) -> str | None:
    """
    Check one condition against the request parameters.

    Args:
        condition: Normalized condition from a ToolAllowance
        params: Parsed request body

    Returns:
        None if the condition holds, otherwise the failure reason
    """
    if condition.param not in params:
        return None

    value = params[condition.param]

    if isinstance(condition, NumericBound):
        return _check_numeric_bound(condition, value)
    if isinstance(condition, StringSet):
        return _check_string_set(condition, value)
    if isinstance(condition, PathPrefix):
        return _check_path_prefix(condition, value)

    # Unreachable for validated policies; fail closed all the same
    return f"unsupported condition: {condition.kind}"


def check_conditions(
    conditions: tuple[Condition, ...],
    params: dict[str, Any],
) -> str | None:
    """
    Check all conditions in order and report the first failure.

    Returns:
        None if every condition holds, otherwise the first failure reason
    """
    for condition in conditions:
        reason = check_condition(condition, params)
        if reason is not None:
            return reason
    return None


def _check_numeric_bound(condition: NumericBound, value: Any) -> str | None:
    # bool is an int subclass but never a valid amount
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return f"{condition.param} must be a number"

    if value > condition.limit:
        return f"Amount exceeds {condition.describe()}"
    return None


def _check_string_set(condition: StringSet, value: Any) -> str | None:
    if not isinstance(value, str):
        return f"{condition.param} must be a string"

    if value not in condition.values:
        allowed = ", ".join(sorted(condition.values))
        return f"Currency not in allowed currencies: [{allowed}]"
    return None


def _check_path_prefix(condition: PathPrefix, value: Any) -> str | None:
    if not isinstance(value, str):
        return f"{condition.param} must be a string"

    # Byte-for-byte comparison, no path normalization
    if not value.startswith(condition.prefix):
        return f"Path must start with prefix {condition.prefix}"
    return None

"""Response validation rules: status, header, body and response-time checks."""

import json
import re
from typing import Any, Callable, Dict, List, Mapping, Optional
from services.orchestrator.domain.models import RequestValidation, ValidationRule
from services.orchestrator.engine.variables import parse_flow_path, resolve_parameterized_value, value_to_string
from shared.constants import SUCCESS_STATUS_MIN, STRICT_SUCCESS_STATUS_MAX
from shared.exceptions import extract_error_message
from shared.types import HttpResponseResult, ValidationResult, ValidationRuleResult

_MISSING = object()

NUMERIC_OPERATOR_ALIASES = {
    "gt": "greater_than",
    "gte": "greater_than_or_equal",
    "lt": "less_than",
    "lte": "less_than_or_equal",
}


class UnsupportedOperatorError(ValueError):
    pass


def _substitute(value: Any, env_vars: Mapping[str, str]) -> Any:
    if isinstance(value, str):
        return resolve_parameterized_value(value, env_vars).resolved
    if isinstance(value, list):
        return [_substitute(item, env_vars) for item in value]
    return value


def _as_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(item).strip() for item in value]
    if value is None:
        return []
    return [part.strip() for part in str(value).split(",")]


def _compare_numbers(operator: str, actual: float, rule: ValidationRule) -> bool:
    operator = NUMERIC_OPERATOR_ALIASES.get(operator, operator)
    if operator == "is_success":
        return SUCCESS_STATUS_MIN <= actual < STRICT_SUCCESS_STATUS_MAX
    if operator == "is_not_success":
        return not SUCCESS_STATUS_MIN <= actual < STRICT_SUCCESS_STATUS_MAX
    if operator in ("in", "not_in"):
        members = {float(item) for item in _as_list(rule.value) if item}
        return (actual in members) == (operator == "in")

    expected = float(rule.value)
    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "greater_than":
        return actual > expected
    if operator == "greater_than_or_equal":
        return actual >= expected
    if operator == "less_than":
        return actual < expected
    if operator == "less_than_or_equal":
        return actual <= expected
    if operator == "between":
        upper = float(rule.value2)
        return min(expected, upper) <= actual <= max(expected, upper)
    raise UnsupportedOperatorError(f"Unsupported operator: {operator}")


def _compare_strings(operator: str, actual: str, rule: ValidationRule) -> bool:
    expected = "" if rule.value is None else str(rule.value)
    if not rule.case_sensitive:
        actual, expected = actual.lower(), expected.lower()

    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "contains":
        return expected in actual
    if operator == "not_contains":
        return expected not in actual
    if operator == "starts_with":
        return actual.startswith(expected)
    if operator == "ends_with":
        return actual.endswith(expected)
    if operator == "matches_regex":
        flags = 0 if rule.case_sensitive else re.IGNORECASE
        return re.search(str(rule.value), actual, flags) is not None
    if operator in ("in", "not_in"):
        members = [m if rule.case_sensitive else m.lower() for m in _as_list(rule.value)]
        return (actual in members) == (operator == "in")
    raise UnsupportedOperatorError(f"Unsupported operator: {operator}")


def _json_path_lookup(document: Any, path: str) -> Any:
    path = (path or "").strip()
    if path.startswith("$"):
        path = path[1:]
    current = document
    for key in parse_flow_path(path):
        if isinstance(current, list):
            try:
                index = int(key)
            except ValueError:
                return _MISSING
            if index < 0 or index >= len(current):
                return _MISSING
            current = current[index]
        elif isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return _MISSING
    return current


def _header(response: HttpResponseResult, name: str) -> Optional[str]:
    lowered = (name or "").lower()
    for key, value in response.headers.items():
        if key.lower() == lowered:
            return value
    return None


def _check_status(rule: ValidationRule, response: HttpResponseResult):
    return _compare_numbers(rule.operator, response.status, rule), response.status


def _check_time(rule: ValidationRule, response: HttpResponseResult):
    return _compare_numbers(rule.operator, response.elapsed_time, rule), response.elapsed_time


def _check_header(rule: ValidationRule, response: HttpResponseResult):
    actual = _header(response, rule.header_name)
    if rule.operator == "exists":
        return actual is not None, actual
    if rule.operator == "not_exists":
        return actual is None, actual
    if actual is None:
        return False, None
    return _compare_strings(rule.operator, actual, rule), actual


def _check_body(rule: ValidationRule, response: HttpResponseResult):
    body = response.body or ""
    operator = rule.operator

    if operator == "is_json":
        try:
            json.loads(body)
            return True, None
        except ValueError:
            return False, None
    if operator == "is_xml":
        stripped = body.lstrip()
        return stripped.startswith("<?xml") or (stripped.startswith("<") and not _looks_like_html(stripped)), None
    if operator == "is_html":
        return _looks_like_html(body.lstrip()), None

    if operator.startswith("json_path_"):
        try:
            document = json.loads(body)
        except ValueError:
            return False, None
        found = _json_path_lookup(document, rule.json_path)
        if operator == "json_path_exists":
            return found is not _MISSING, None if found is _MISSING else found
        if found is _MISSING:
            return False, None
        actual = value_to_string(found)
        if actual is None:
            actual = "null"
        if operator == "json_path_equals":
            return _compare_strings("equals", actual, rule), found
        if operator == "json_path_contains":
            return _compare_strings("contains", actual, rule), found
        raise UnsupportedOperatorError(f"Unsupported operator: {operator}")

    return _compare_strings(operator, body, rule), None


def _looks_like_html(text: str) -> bool:
    head = text[:512].lower()
    return head.startswith("<!doctype html") or "<html" in head


CATEGORY_CHECKS: Dict[str, Callable] = {
    "status": _check_status,
    "time": _check_time,
    "header": _check_header,
    "body": _check_body,
}


def _evaluate_rule(rule: ValidationRule, response: HttpResponseResult, env_vars: Mapping[str, str]) -> ValidationRuleResult:
    result = ValidationRuleResult(
        rule_id=rule.id,
        rule_name=rule.name,
        category=rule.category,
        passed=True,
        expected_value=rule.value,
    )
    if not rule.enabled:
        result.message = "Rule disabled"
        return result

    rule = rule.model_copy(update={
        "value": _substitute(rule.value, env_vars),
        "value2": _substitute(rule.value2, env_vars),
        "header_name": _substitute(rule.header_name, env_vars),
        "json_path": _substitute(rule.json_path, env_vars),
    })
    result.expected_value = rule.value

    check = CATEGORY_CHECKS.get(rule.category)
    if check is None:
        result.passed = False
        result.error = f"Unsupported rule category: {rule.category}"
        result.message = result.error
        return result

    try:
        passed, actual = check(rule, response)
    except Exception as e:
        result.passed = False
        result.error = extract_error_message(e)
        result.message = result.error
        return result

    result.passed = bool(passed)
    result.actual_value = actual
    result.message = f"{rule.name or rule.id} {'passed' if passed else 'failed'}"
    return result


def execute_validation(
    validation: Optional[RequestValidation],
    response: HttpResponseResult,
    env_vars: Optional[Mapping[str, str]] = None,
) -> ValidationResult:
    if validation is None or not validation.enabled or not validation.rules:
        return ValidationResult(enabled=False, all_passed=True)

    results = [_evaluate_rule(rule, response, env_vars or {}) for rule in validation.rules]
    passed = sum(1 for r in results if r.passed)
    return ValidationResult(
        enabled=True,
        total_rules=len(results),
        passed_rules=passed,
        failed_rules=len(results) - passed,
        all_passed=passed == len(results),
        results=results,
    )

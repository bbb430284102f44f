"""Alarm rule validation and predicate evaluation."""

import operator

from runtime.defaults import ALARM_SEVERITIES
from runtime.errors import ValidationError
from runtime.parsing import finite_float, normalize_upper_choice, parse_bool


RULE_TYPES = ("THRESHOLD", "STATUS")
STATUS_TRIGGERS = ("FAULT", "OFF")
OPERATORS = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


def normalize_alarm_rule(raw_rule):
    """
    Validate a raw alarm rule mapping and return its normalized form.

    THRESHOLD rules need a metric name, a comparison operator and a finite
    numeric threshold. STATUS rules need a trigger status and always compare
    the actuator status with "==". Fields belonging to the other rule type are
    rejected.
    """
    if not isinstance(raw_rule, dict):
        raise ValidationError("Alarm rule must be a mapping.", code="invalid_alarm_rule")

    rule_type = normalize_upper_choice(raw_rule.get("rule_type"), RULE_TYPES)
    if rule_type is None:
        raise ValidationError(
            f"Invalid rule_type '{raw_rule.get('rule_type')}'. Allowed values: {', '.join(RULE_TYPES)}.",
            code="invalid_alarm_rule",
        )

    severity = normalize_upper_choice(raw_rule.get("severity", "WARNING"), ALARM_SEVERITIES)
    if severity is None:
        raise ValidationError(
            f"Invalid severity '{raw_rule.get('severity')}'. Allowed values: {', '.join(ALARM_SEVERITIES)}.",
            code="invalid_alarm_rule",
        )

    rule = {
        "enabled": parse_bool(raw_rule.get("enabled"), True),
        "rule_type": rule_type,
        "severity": severity,
        "notify": parse_bool(raw_rule.get("notify"), False),
    }

    if rule_type == "STATUS":
        if raw_rule.get("threshold") is not None:
            raise ValidationError("STATUS rules do not take a threshold.", code="invalid_alarm_rule")
        trigger_status = normalize_upper_choice(raw_rule.get("trigger_status"), STATUS_TRIGGERS)
        if trigger_status is None:
            raise ValidationError(
                f"Invalid trigger_status '{raw_rule.get('trigger_status')}'. "
                f"Allowed values: {', '.join(STATUS_TRIGGERS)}.",
                code="invalid_alarm_rule",
            )
        rule.update({"metric": "status", "operator": "==", "threshold": None, "trigger_status": trigger_status})
        return rule

    if raw_rule.get("trigger_status") is not None:
        raise ValidationError("THRESHOLD rules do not take a trigger_status.", code="invalid_alarm_rule")
    metric = str(raw_rule.get("metric") or "").strip()
    if not metric:
        raise ValidationError("THRESHOLD rules require a metric.", code="invalid_alarm_rule")
    op = str(raw_rule.get("operator") or "").strip()
    if op not in OPERATORS:
        raise ValidationError(
            f"Invalid operator '{raw_rule.get('operator')}'. Allowed values: {', '.join(OPERATORS)}.",
            code="invalid_alarm_rule",
        )
    threshold = finite_float(raw_rule.get("threshold"))
    if threshold is None:
        raise ValidationError("THRESHOLD rules require a numeric threshold.", code="invalid_alarm_rule")
    rule.update({"metric": metric, "operator": op, "threshold": threshold, "trigger_status": None})
    return rule


def evaluate_rule(rule, *, status=None, metrics=None):
    """
    Return (predicate, observed_value) for `rule`.

    predicate is None when the rule cannot be evaluated against the given
    inputs, e.g. a THRESHOLD metric that is missing or non-numeric.
    """
    if rule["rule_type"] == "STATUS":
        if status is None:
            return None, None
        return status == rule["trigger_status"], status

    raw_value = (metrics or {}).get(rule["metric"])
    value = finite_float(raw_value)
    if value is None:
        return None, raw_value
    return bool(OPERATORS[rule["operator"]](value, rule["threshold"])), value


def describe_rule_trigger(rule, actuator_name, observed_value):
    if rule["rule_type"] == "STATUS":
        return f"{actuator_name} reported status {observed_value}."
    return f"{actuator_name}: {rule['metric']}={observed_value} {rule['operator']} {rule['threshold']}."

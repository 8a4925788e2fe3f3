"""Load Rule objects from YAML files."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from sharewatch.policy.conditions import inactivity_threshold_days
from sharewatch.policy.models import (
    ActionType,
    Condition,
    ConditionField,
    ConditionGroup,
    Operator,
    Rule,
    RuleAction,
    RuleType,
    Severity,
)

_DEFAULT_SEVERITY = {
    RuleType.CONCURRENT_STREAMS: Severity.WARNING,
    RuleType.IMPOSSIBLE_TRAVEL: Severity.HIGH,
    RuleType.SIMULTANEOUS_LOCATIONS: Severity.WARNING,
    RuleType.DEVICE_VELOCITY: Severity.WARNING,
    RuleType.GEO_RESTRICTION: Severity.HIGH,
    RuleType.ACCOUNT_INACTIVITY: Severity.LOW,
    RuleType.CUSTOM: Severity.WARNING,
}


def load_rules(path: str | Path) -> list[Rule]:
    """Load every rule from a YAML file path."""
    text = Path(path).read_text(encoding="utf-8")
    return load_rules_from_string(text)


def load_rules_dirs(dirs: list[Path]) -> list[Rule]:
    """Load every *.yaml/*.yml rules file in the given directories.

    Files are read in name order; rule ids must be unique across all files.
    """
    rules: list[Rule] = []
    seen: dict[str, Path] = {}
    for directory in dirs:
        paths = sorted(
            p for p in Path(directory).iterdir() if p.suffix in (".yaml", ".yml")
        )
        for path in paths:
            for rule in load_rules(path):
                if rule.id in seen:
                    raise ValueError(
                        f"Duplicate rule id {rule.id} in {path} (also in {seen[rule.id]})"
                    )
                seen[rule.id] = path
                rules.append(rule)
    return rules


def load_rules_from_string(text: str) -> list[Rule]:
    """Parse a YAML document with a top-level ``rules`` list."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValueError(f"Rules YAML is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("Rules YAML must be a mapping")
    raw_rules = data.get("rules", [])
    if not isinstance(raw_rules, list):
        raise ValueError("'rules' must be a list")

    rules: list[Rule] = []
    seen: set[str] = set()
    for raw in raw_rules:
        if not isinstance(raw, dict):
            raise ValueError(f"Rule entry must be a mapping, got {raw!r}")
        rule = parse_rule(raw)
        if rule.id in seen:
            raise ValueError(f"Duplicate rule id: {rule.id}")
        seen.add(rule.id)
        rules.append(rule)
    return rules


def parse_rule(data: dict[str, Any]) -> Rule:
    """Build one Rule from its mapping form."""
    if "id" not in data:
        raise ValueError("Rule is missing 'id'")
    rule_id = str(data["id"])
    rule_type = _enum(RuleType, data.get("type", "custom"), "rule type", rule_id)

    if "groups" in data:
        groups = _parse_groups(data["groups"], rule_id)
    elif rule_type == RuleType.CUSTOM:
        raise ValueError(f"Custom rule '{rule_id}' needs 'groups'")
    else:
        groups = (ConditionGroup((typed_condition(rule_type, data.get("params", {})),)),)

    if not groups or any(not g.conditions for g in groups):
        raise ValueError(f"Rule '{rule_id}' has an empty condition group")

    severity = _enum(
        Severity,
        data.get("severity", _DEFAULT_SEVERITY[rule_type].value),
        "severity",
        rule_id,
    )

    actions_raw = data.get("actions", ["create_violation"])
    actions = tuple(_parse_action(a, rule_id) for a in actions_raw)

    server_users = data.get("server_user_ids", ())
    if isinstance(server_users, str):
        server_users = (server_users,)

    return Rule(
        id=rule_id,
        name=str(data.get("name", rule_id)),
        type=rule_type,
        groups=groups,
        severity=severity,
        actions=actions,
        enabled=bool(data.get("enabled", True)),
        server_id=data.get("server_id"),
        server_user_ids=tuple(str(u) for u in server_users),
        description=data.get("description", ""),
    )


def typed_condition(rule_type: RuleType, params: dict[str, Any]) -> Condition:
    """Expand a typed rule's params into its single condition."""
    params = dict(params or {})
    if rule_type == RuleType.CONCURRENT_STREAMS:
        return Condition(
            ConditionField.CONCURRENT_STREAMS,
            Operator.GTE,
            int(params.pop("max_streams", 3)),
            params,
        )
    if rule_type == RuleType.IMPOSSIBLE_TRAVEL:
        params.setdefault("lookback_hours", 24)
        return Condition(
            ConditionField.IMPOSSIBLE_TRAVEL,
            Operator.GT,
            float(params.pop("max_speed_kmh", 500)),
            params,
        )
    if rule_type == RuleType.SIMULTANEOUS_LOCATIONS:
        return Condition(
            ConditionField.SIMULTANEOUS_LOCATIONS,
            Operator.GT,
            float(params.pop("min_distance_km", 100)),
            params,
        )
    if rule_type == RuleType.DEVICE_VELOCITY:
        params.setdefault("window_hours", 24)
        params.setdefault("by", "device")
        if params["by"] not in ("device", "ip"):
            raise ValueError(f"device_velocity 'by' must be device or ip: {params['by']}")
        return Condition(
            ConditionField.DEVICE_VELOCITY,
            Operator.GT,
            int(params.pop("max_devices", 5)),
            params,
        )
    if rule_type == RuleType.GEO_RESTRICTION:
        mode = params.setdefault("mode", "blocklist")
        if mode not in ("blocklist", "allowlist"):
            raise ValueError(f"geo_restriction mode must be blocklist or allowlist: {mode}")
        countries = [str(c).upper() for c in params.pop("countries", [])]
        operator = Operator.NOT_IN if mode == "allowlist" else Operator.IN
        return Condition(ConditionField.GEO_RESTRICTION, operator, countries, params)
    if rule_type == RuleType.ACCOUNT_INACTIVITY:
        value = params.setdefault("inactivity_value", 30)
        unit = params.setdefault("inactivity_unit", "days")
        return Condition(
            ConditionField.ACCOUNT_INACTIVITY,
            Operator.GT,
            inactivity_threshold_days(value, unit),
            params,
        )
    raise ValueError(f"No typed condition for rule type {rule_type.value}")


def _parse_groups(raw_groups: Any, rule_id: str) -> tuple[ConditionGroup, ...]:
    if not isinstance(raw_groups, list):
        raise ValueError(f"Rule '{rule_id}': 'groups' must be a list")
    groups: list[ConditionGroup] = []
    for raw_group in raw_groups:
        # A group is either a bare list of conditions or {conditions: [...]}.
        if isinstance(raw_group, dict):
            raw_group = raw_group.get("conditions", [])
        if not isinstance(raw_group, list):
            raise ValueError(f"Rule '{rule_id}': each group must be a list")
        groups.append(
            ConditionGroup(tuple(_parse_condition(c, rule_id) for c in raw_group))
        )
    return tuple(groups)


def _parse_condition(raw: Any, rule_id: str) -> Condition:
    if not isinstance(raw, dict) or "field" not in raw:
        raise ValueError(f"Rule '{rule_id}': condition needs a 'field'")
    field = _enum(ConditionField, raw["field"], "condition field", rule_id)
    params = dict(raw.get("params", {}) or {})

    # Typed fields accept their shorthand params in place of operator/value.
    if "value" not in raw and field.value in {t.value for t in RuleType}:
        base = typed_condition(RuleType(field.value), params)
        if "operator" in raw:
            return Condition(
                base.field,
                _enum(Operator, raw["operator"], "operator", rule_id),
                base.value,
                base.params,
            )
        return base

    if "value" not in raw:
        raise ValueError(f"Rule '{rule_id}': condition '{field.value}' needs a 'value'")
    operator = _enum(Operator, raw.get("operator", "eq"), "operator", rule_id)
    return Condition(field, operator, raw["value"], params)


def _parse_action(raw: Any, rule_id: str) -> RuleAction:
    if isinstance(raw, str):
        return RuleAction(_enum(ActionType, raw, "action", rule_id))
    if isinstance(raw, dict) and "type" in raw:
        params = {k: v for k, v in raw.items() if k != "type"}
        return RuleAction(_enum(ActionType, raw["type"], "action", rule_id), params)
    raise ValueError(f"Rule '{rule_id}': invalid action {raw!r}")


def _enum(enum_cls: Any, value: Any, what: str, rule_id: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        raise ValueError(f"Rule '{rule_id}': unknown {what} '{value}'") from None


def dump_rule(rule: Rule) -> dict[str, Any]:
    """Serialise a rule back to its mapping form (groups always explicit)."""
    return {
        "id": rule.id,
        "name": rule.name,
        "type": rule.type.value,
        "severity": rule.severity.value,
        "enabled": rule.enabled,
        "server_id": rule.server_id,
        "server_user_ids": list(rule.server_user_ids),
        "description": rule.description,
        "groups": [
            [
                {
                    "field": c.field.value,
                    "operator": c.operator.value,
                    "value": c.value,
                    "params": dict(c.params),
                }
                for c in group.conditions
            ]
            for group in rule.groups
        ],
        "actions": [{"type": a.type.value, **a.params} for a in rule.actions],
    }

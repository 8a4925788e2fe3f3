"""Rule data models — immutable dataclasses used across the entire codebase."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class RuleType(enum.Enum):
    """Which evaluator a typed rule expands to, or ``custom`` for explicit groups."""

    CONCURRENT_STREAMS = "concurrent_streams"
    IMPOSSIBLE_TRAVEL = "impossible_travel"
    SIMULTANEOUS_LOCATIONS = "simultaneous_locations"
    DEVICE_VELOCITY = "device_velocity"
    GEO_RESTRICTION = "geo_restriction"
    ACCOUNT_INACTIVITY = "account_inactivity"
    CUSTOM = "custom"


class ConditionField(enum.Enum):
    """Discriminant selecting the evaluator for one condition."""

    CONCURRENT_STREAMS = "concurrent_streams"
    IMPOSSIBLE_TRAVEL = "impossible_travel"
    SIMULTANEOUS_LOCATIONS = "simultaneous_locations"
    DEVICE_VELOCITY = "device_velocity"
    GEO_RESTRICTION = "geo_restriction"
    ACCOUNT_INACTIVITY = "account_inactivity"
    COUNTRY = "country"
    MEDIA_TYPE = "media_type"
    IS_TRANSCODING = "is_transcoding"
    IS_LOCAL_NETWORK = "is_local_network"
    IP_IN_RANGE = "ip_in_range"
    SERVER_ID = "server_id"
    TRUST_SCORE = "trust_score"
    ACCOUNT_AGE_DAYS = "account_age_days"
    USER_ID = "user_id"
    PLATFORM = "platform"
    DEVICE_TYPE = "device_type"
    CLIENT_NAME = "client_name"


# Fields whose value can change mid-session when transcoding starts or stops.
TRANSCODE_FIELDS = frozenset({ConditionField.IS_TRANSCODING})


class Operator(enum.Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"


class Severity(enum.Enum):
    LOW = "low"
    WARNING = "warning"
    HIGH = "high"


class ActionType(enum.Enum):
    """What to do when a rule matches."""

    CREATE_VIOLATION = "create_violation"
    NOTIFY = "notify"
    TERMINATE_STREAM = "terminate_stream"
    LOG_ONLY = "log_only"


DESTRUCTIVE_ACTIONS = frozenset({ActionType.TERMINATE_STREAM})


@dataclass(frozen=True)
class Condition:
    """One testable clause, e.g. concurrent streams >= 3."""

    field: ConditionField
    operator: Operator
    value: Any
    params: dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class ConditionGroup:
    """Conditions AND-ed together."""

    conditions: tuple[Condition, ...] = ()


@dataclass(frozen=True)
class RuleAction:
    type: ActionType
    params: dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class Rule:
    """A complete rule definition. Groups are OR-ed together."""

    id: str
    name: str
    type: RuleType
    groups: tuple[ConditionGroup, ...] = ()
    severity: Severity = Severity.WARNING
    actions: tuple[RuleAction, ...] = (RuleAction(ActionType.CREATE_VIOLATION),)
    enabled: bool = True
    server_id: str | None = None
    server_user_ids: tuple[str, ...] = ()
    description: str = ""

    def fields(self) -> set[ConditionField]:
        return {c.field for g in self.groups for c in g.conditions}

    def applies_to(
        self, server_id: str, server_user_id: str, vendor_user_id: str | None = None
    ) -> bool:
        """Scope check. ``server_user_ids`` may list scoped or vendor user ids."""
        if not self.enabled:
            return False
        if self.server_id and self.server_id != server_id:
            return False
        if self.server_user_ids and not (
            server_user_id in self.server_user_ids
            or (vendor_user_id is not None and vendor_user_id in self.server_user_ids)
        ):
            return False
        return True

    @property
    def has_transcode_conditions(self) -> bool:
        return bool(self.fields() & TRANSCODE_FIELDS)

    @property
    def is_inactivity_audit(self) -> bool:
        return ConditionField.ACCOUNT_INACTIVITY in self.fields()

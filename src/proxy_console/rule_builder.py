from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .value_store import FieldPath, set_path

OPERATORS = {"AND": "&&", "OR": "||"}
CONDITION_FIELDS = {"matcher", "value", "secondary_value", "negate"}

logger = logging.getLogger(__name__)


class RuleBuilderError(ValueError):
    """Raised for edits that reference unknown groups, conditions or matchers."""


@dataclass(slots=True, frozen=True)
class MatcherSpec:
    name: str
    description: str
    placeholder: str
    key_placeholder: str | None = None
    multi_value: bool = False

    @property
    def needs_key(self) -> bool:
        return self.key_placeholder is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "placeholder": self.placeholder,
            "key_placeholder": self.key_placeholder,
            "needs_key": self.needs_key,
            "multi_value": self.multi_value,
        }


HTTP_MATCHERS: tuple[MatcherSpec, ...] = (
    MatcherSpec("Host", "Match exact hostname (case-insensitive)", "example.com or *.example.com"),
    MatcherSpec("HostRegexp", "Match hostname using Go regular expression", "^.+\\.example\\.com$"),
    MatcherSpec("Path", "Match exact request path", "/api/users"),
    MatcherSpec("PathPrefix", "Match request path prefix", "/api"),
    MatcherSpec("PathRegexp", "Match path using Go regular expression", "^/api/.*"),
    MatcherSpec(
        "Header",
        "Match exact header key-value pair",
        "Header value (e.g., application/json)",
        key_placeholder="Header name (e.g., Content-Type)",
    ),
    MatcherSpec(
        "HeaderRegexp",
        "Match header using regular expression",
        "Header value pattern",
        key_placeholder="Header name (e.g., Content-Type)",
    ),
    MatcherSpec(
        "Query",
        "Match exact query parameter key-value pair",
        "Parameter value (e.g., 10)",
        key_placeholder="Parameter name (e.g., page)",
    ),
    MatcherSpec(
        "QueryRegexp",
        "Match query parameter using regular expression",
        "Parameter value pattern",
        key_placeholder="Parameter name (e.g., page)",
    ),
    MatcherSpec("Method", "Match HTTP request methods (comma-separated)", "GET, POST, PUT, DELETE", multi_value=True),
    MatcherSpec("ClientIP", "Match client IP address or CIDR range", "192.168.1.0/24 or 10.0.0.1"),
)

TCP_MATCHERS: tuple[MatcherSpec, ...] = (
    MatcherSpec("HostSNI", "Match exact Server Name Indication (TLS hostname)", "example.com or * for all"),
    MatcherSpec("HostSNIRegexp", "Match SNI using Go regular expression", "^.+\\.example\\.com$"),
    MatcherSpec("ClientIP", "Match client IP address or CIDR range", "192.168.1.0/24 or 10.0.0.1"),
    MatcherSpec("ALPN", "Match Application-Layer Protocol Negotiation", "h2, http/1.1, etc."),
)

MATCHERS: dict[str, tuple[MatcherSpec, ...]] = {"http": HTTP_MATCHERS, "tcp": TCP_MATCHERS}


def matchers_for(protocol: str) -> dict[str, MatcherSpec]:
    if protocol not in MATCHERS:
        raise RuleBuilderError(f"no rule matchers for protocol: {protocol}")
    return {spec.name: spec for spec in MATCHERS[protocol]}


def _validate_operator(operator: str) -> str:
    candidate = str(operator or "").strip().upper()
    if candidate not in OPERATORS:
        raise RuleBuilderError(f"unsupported operator: {operator}")
    return candidate


@dataclass(slots=True)
class RuleCondition:
    id: str
    matcher: str
    value: str = ""
    # header or query parameter name for key/value matchers
    secondary_value: str = ""
    negate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "matcher": self.matcher,
            "value": self.value,
            "secondary_value": self.secondary_value,
            "negate": self.negate,
        }


@dataclass(slots=True)
class RuleGroup:
    id: str
    operator: str = "OR"
    conditions: list[RuleCondition] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operator": self.operator,
            "conditions": [condition.to_dict() for condition in self.conditions],
        }


def _quote(argument: str) -> str:
    return f"`{argument}`"


def serialize_condition(condition: RuleCondition, spec: MatcherSpec) -> str | None:
    if not condition.value:
        return None
    if spec.multi_value:
        arguments = [part.strip() for part in condition.value.split(",") if part.strip()]
    elif spec.needs_key:
        if not condition.secondary_value:
            return None
        arguments = [condition.secondary_value, condition.value]
    else:
        arguments = [condition.value]
    if not arguments:
        return None
    prefix = "!" if condition.negate else ""
    return f"{prefix}{spec.name}({', '.join(_quote(argument) for argument in arguments)})"


@dataclass(slots=True)
class RuleBuilder:
    """Draft state for a routing rule; nothing reaches the value tree until :meth:`commit`."""

    protocol: str = "http"
    groups: list[RuleGroup] = field(default_factory=list)
    operator: str = "AND"
    next_id: int = 1

    def __post_init__(self) -> None:
        matchers_for(self.protocol)
        self.operator = _validate_operator(self.operator)
        if not self.groups:
            self.add_group()

    @property
    def matchers(self) -> dict[str, MatcherSpec]:
        return matchers_for(self.protocol)

    def _new_id(self) -> str:
        identifier = str(self.next_id)
        self.next_id += 1
        return identifier

    def _group(self, group_id: str) -> RuleGroup:
        for group in self.groups:
            if group.id == group_id:
                return group
        raise RuleBuilderError(f"unknown group: {group_id}")

    def _condition(self, group: RuleGroup, condition_id: str) -> RuleCondition:
        for condition in group.conditions:
            if condition.id == condition_id:
                return condition
        raise RuleBuilderError(f"unknown condition: {condition_id}")

    def add_group(self) -> str:
        group = RuleGroup(id=self._new_id())
        self.groups.append(group)
        return group.id

    def remove_group(self, group_id: str) -> bool:
        self._group(group_id)
        if len(self.groups) <= 1:
            return False
        self.groups = [group for group in self.groups if group.id != group_id]
        return True

    def add_condition(self, group_id: str) -> str:
        group = self._group(group_id)
        condition = RuleCondition(id=self._new_id(), matcher=MATCHERS[self.protocol][0].name)
        group.conditions.append(condition)
        return condition.id

    def update_condition(self, group_id: str, condition_id: str, field_name: str, value: Any) -> None:
        condition = self._condition(self._group(group_id), condition_id)
        if field_name == "type":
            field_name = "matcher"
        if field_name not in CONDITION_FIELDS:
            raise RuleBuilderError(f"unknown condition field: {field_name}")
        if field_name == "matcher":
            if value not in self.matchers:
                raise RuleBuilderError(f"unknown matcher for {self.protocol}: {value}")
            condition.matcher = str(value)
        elif field_name == "negate":
            condition.negate = bool(value)
        else:
            setattr(condition, field_name, "" if value is None else str(value))

    def remove_condition(self, group_id: str, condition_id: str) -> None:
        group = self._group(group_id)
        self._condition(group, condition_id)
        group.conditions = [condition for condition in group.conditions if condition.id != condition_id]

    def set_group_operator(self, group_id: str, operator: str) -> None:
        self._group(group_id).operator = _validate_operator(operator)

    def set_top_operator(self, operator: str) -> None:
        self.operator = _validate_operator(operator)

    def _serialize_group(self, group: RuleGroup, matchers: dict[str, MatcherSpec]) -> str | None:
        parts = [
            serialized
            for condition in group.conditions
            if condition.matcher in matchers
            and (serialized := serialize_condition(condition, matchers[condition.matcher])) is not None
        ]
        if not parts:
            return None
        if len(parts) == 1:
            return parts[0]
        return "(" + f" {OPERATORS[group.operator]} ".join(parts) + ")"

    def build_expression(self) -> str:
        matchers = self.matchers
        group_rules = [
            serialized
            for group in self.groups
            if (serialized := self._serialize_group(group, matchers)) is not None
        ]
        if not group_rules:
            return ""
        if len(group_rules) == 1:
            return group_rules[0]
        return f" {OPERATORS[self.operator]} ".join(group_rules)

    def commit(self, tree: Any, path: FieldPath) -> tuple[Any, bool]:
        """Write the serialized rule at ``path``; an empty rule leaves ``tree`` as is."""
        expression = self.build_expression()
        if not expression:
            return tree, False
        logger.info("rule_built", extra={"protocol": self.protocol, "rule": expression, "group_count": len(self.groups)})
        return set_path(tree, path, expression), True

    def to_dict(self) -> dict[str, Any]:
        return {
            "protocol": self.protocol,
            "operator": self.operator,
            "groups": [group.to_dict() for group in self.groups],
            "next_id": self.next_id,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None, protocol: str | None = None) -> RuleBuilder:
        payload = payload or {}
        if not isinstance(payload, dict):
            raise RuleBuilderError("rule builder draft must be an object")
        resolved_protocol = str(protocol or payload.get("protocol") or "http")
        matchers = matchers_for(resolved_protocol)
        raw_groups = payload.get("groups") or []
        if not isinstance(raw_groups, list):
            raise RuleBuilderError("groups must be a list")
        try:
            next_id = int(payload.get("next_id") or 1)
        except (TypeError, ValueError) as exc:
            raise RuleBuilderError(f"invalid next_id: {payload.get('next_id')!r}") from exc

        groups: list[RuleGroup] = []
        highest_id = 0
        for raw_group in raw_groups:
            if not isinstance(raw_group, dict):
                raise RuleBuilderError(f"group must be an object: {raw_group!r}")
            raw_conditions = raw_group.get("conditions") or []
            if not isinstance(raw_conditions, list):
                raise RuleBuilderError("conditions must be a list")
            conditions = []
            for raw_condition in raw_conditions:
                if not isinstance(raw_condition, dict):
                    raise RuleBuilderError(f"condition must be an object: {raw_condition!r}")
                matcher = str(raw_condition.get("matcher") or raw_condition.get("type") or "")
                if matcher not in matchers:
                    raise RuleBuilderError(f"unknown matcher for {resolved_protocol}: {matcher}")
                condition = RuleCondition(
                    id=str(raw_condition.get("id") or ""),
                    matcher=matcher,
                    value=str(raw_condition.get("value") or ""),
                    secondary_value=str(raw_condition.get("secondary_value") or ""),
                    negate=bool(raw_condition.get("negate", False)),
                )
                conditions.append(condition)
            groups.append(
                RuleGroup(
                    id=str(raw_group.get("id") or ""),
                    operator=_validate_operator(raw_group.get("operator", "OR")),
                    conditions=conditions,
                )
            )
            for identifier in [groups[-1].id, *(condition.id for condition in conditions)]:
                if identifier.isdigit():
                    highest_id = max(highest_id, int(identifier))

        builder = cls(
            protocol=resolved_protocol,
            groups=groups,
            operator=payload.get("operator", "AND"),
            next_id=max(next_id, highest_id + 1),
        )
        for group in builder.groups:
            for condition in group.conditions:
                if not condition.id:
                    condition.id = builder._new_id()
            if not group.id:
                group.id = builder._new_id()
        return builder


def build_expression(payload: dict[str, Any] | None, protocol: str | None = None) -> str:
    return RuleBuilder.from_dict(payload, protocol=protocol).build_expression()

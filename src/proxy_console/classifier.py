from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class RenderStrategy(str, Enum):
    DOMAIN_REFERENCE = "domain_reference"
    ENUM_SELECT = "enum_select"
    MULTILINE_TEXT = "multiline_text"
    PLAIN_TEXT = "plain_text"
    NUMBER = "number"
    BOOLEAN_FLAG = "boolean_flag"
    KEY_VALUE_MAP = "key_value_map"
    NESTED_STRUCT = "nested_struct"
    ARRAY_OF_STRUCT = "array_of_struct"
    ARRAY_OF_SCALAR = "array_of_scalar"
    FALLBACK = "fallback"


class ReferenceKind(str, Enum):
    MIDDLEWARES = "middlewares"
    SERVICE = "service"
    RULE = "rule"
    TLS_OPTIONS = "tls_options"
    CERT_RESOLVER = "cert_resolver"
    ENTRY_POINTS = "entry_points"
    PARENT_REFS = "parent_refs"


@dataclass(slots=True, frozen=True)
class FieldStrategy:
    strategy: RenderStrategy
    reference_kind: ReferenceKind | None = None
    # Only meaningful for BOOLEAN_FLAG: True when presence of ``{}`` is the flag.
    object_flag: bool = False


# (property name, required type) -> reference kind
DOMAIN_REFERENCE_FIELDS: dict[tuple[str, str], ReferenceKind] = {
    ("middlewares", "array"): ReferenceKind.MIDDLEWARES,
    ("service", "string"): ReferenceKind.SERVICE,
    ("fallback", "string"): ReferenceKind.SERVICE,
    ("rule", "string"): ReferenceKind.RULE,
    ("options", "string"): ReferenceKind.TLS_OPTIONS,
    ("certResolver", "string"): ReferenceKind.CERT_RESOLVER,
    ("entryPoints", "array"): ReferenceKind.ENTRY_POINTS,
    ("parentRefs", "array"): ReferenceKind.PARENT_REFS,
}

# Service references that only apply to fields of array-of-struct elements,
# e.g. the ``services`` list of a weighted service.
ITEM_SERVICE_FIELDS = frozenset({"name", "service", "fallback"})


def property_types(node: dict[str, Any] | None) -> list[str]:
    if not isinstance(node, dict):
        return []
    raw = node.get("type")
    if isinstance(raw, list):
        return [str(item) for item in raw]
    if raw is None:
        return []
    return [str(raw)]


def has_properties(node: Any) -> bool:
    return isinstance(node, dict) and isinstance(node.get("properties"), dict) and len(node["properties"]) > 0


def is_object_array(node: dict[str, Any]) -> bool:
    items = node.get("items")
    if not isinstance(items, dict):
        return False
    return items.get("type") == "object" or has_properties(items)


def is_composite(node: dict[str, Any]) -> bool:
    """Objects with their own properties get a tab; everything else is a simple field."""
    return "object" in property_types(node) and has_properties(node)


def _domain_reference(name: str, types: list[str], node: dict[str, Any], in_array_item: bool) -> ReferenceKind | None:
    for type_name in types:
        kind = DOMAIN_REFERENCE_FIELDS.get((name, type_name))
        if kind is not None:
            return kind
    if in_array_item and name in ITEM_SERVICE_FIELDS and "string" in types and not node.get("enum"):
        return ReferenceKind.SERVICE
    return None


def classify(name: str, node: dict[str, Any], in_array_item: bool = False) -> FieldStrategy:
    node = node if isinstance(node, dict) else {}
    types = property_types(node)

    kind = _domain_reference(name, types, node, in_array_item)
    if kind is not None:
        return FieldStrategy(RenderStrategy.DOMAIN_REFERENCE, reference_kind=kind)

    if "string" in types:
        if node.get("enum"):
            return FieldStrategy(RenderStrategy.ENUM_SELECT)
        description = node.get("description")
        if node.get("format") == "textarea" or (isinstance(description, str) and "multiline" in description):
            return FieldStrategy(RenderStrategy.MULTILINE_TEXT)
        return FieldStrategy(RenderStrategy.PLAIN_TEXT)

    if "number" in types or "integer" in types:
        return FieldStrategy(RenderStrategy.NUMBER)

    if "boolean" in types:
        return FieldStrategy(RenderStrategy.BOOLEAN_FLAG)

    if "array" in types:
        if is_object_array(node):
            return FieldStrategy(RenderStrategy.ARRAY_OF_STRUCT)
        return FieldStrategy(RenderStrategy.ARRAY_OF_SCALAR)

    if "object" in types:
        additional = node.get("additionalProperties")
        if isinstance(additional, dict) and not has_properties(node):
            return FieldStrategy(RenderStrategy.KEY_VALUE_MAP)
        if not has_properties(node):
            return FieldStrategy(RenderStrategy.BOOLEAN_FLAG, object_flag=True)
        return FieldStrategy(RenderStrategy.NESTED_STRUCT)

    return FieldStrategy(RenderStrategy.FALLBACK)

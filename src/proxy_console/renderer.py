from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from .classifier import FieldStrategy, ReferenceKind, RenderStrategy, classify, has_properties, is_composite
from .references import (
    RULE_PROTOCOLS,
    EntryPointLister,
    ReferencePicker,
    ResourceResolver,
    add_unique,
)
from .rule_builder import RuleBuilder
from .schema_resolver import SchemaInvalidError, resolve_schema
from .value_store import (
    FieldPath,
    add_map_entry,
    append_item,
    get_path,
    move_item,
    remove_item,
    remove_map_entry,
    rename_map_key,
    replace_item,
    set_map_value,
    set_path,
)

GENERAL_TAB = "general"
EMPTY_DISPLAY = "-"
EMPTY_LIST_DISPLAY = "None"
SEARCHABLE_ENUM_THRESHOLD = 10

STATUS_READY = "ready"
STATUS_LOADING = "loading"
STATUS_ERROR = "error"
STATUS_INVALID = "invalid"

DEFAULT_DESCRIPTIONS = {
    "fallback": "Backup service activated when the main service becomes unreachable",
    "certResolver": "Name of the certificate resolver (e.g., letsencrypt)",
    "middlewares": "Order matters: middlewares are executed in the order they appear",
}
ITEM_SERVICE_DESCRIPTION = "Reference to an existing service"

logger = logging.getLogger(__name__)


class RenderMode(str, Enum):
    EDIT = "edit"
    READ_ONLY = "readonly"


def humanize_label(key: str) -> str:
    text = re.sub(r"([A-Z])", r" \1", key).replace("_", " ").strip()
    return text[:1].upper() + text[1:]


def field_label(key: str, node: dict[str, Any]) -> str:
    title = node.get("title")
    if isinstance(title, str) and title:
        return title
    return humanize_label(key)


def _coerce_number(value: Any) -> int | float | None:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    if not isinstance(value, str):
        raise ValueError(f"expected a number, got {type(value).__name__}")
    text = value.strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        raise ValueError(f"not a number: {value!r}") from None
    if not math.isfinite(number):
        raise ValueError(f"not a finite number: {value!r}")
    return number


def _enum_literal(choices: list[Any], value: Any) -> Any:
    if value is None:
        return None
    for choice in choices:
        if choice == value or str(choice) == str(value):
            return choice
    return value


@dataclass(slots=True)
class FieldActions:
    """Write callbacks bound to one field of the tree rendered in this pass."""

    path: FieldPath
    tree: Any
    commit: Callable[[Any], None] = field(repr=False)
    strategy: FieldStrategy
    operations: tuple[str, ...]
    protocol: str = "http"
    choices: list[Any] | None = None
    element_index: int | None = None

    def current(self) -> Any:
        return get_path(self.tree, self.path)

    def write(self, value: Any, operation: str = "set") -> None:
        if self.element_index is not None:
            parent_path = self.path[:-1]
            # list slots keep "" so indexes stay stable while typing
            element = "" if value is None else value
            updated = set_path(self.tree, parent_path, replace_item(get_path(self.tree, parent_path), self.element_index, element))
        else:
            updated = set_path(self.tree, self.path, value)
        logger.debug(
            "field_changed",
            extra={"path": ".".join(str(segment) for segment in self.path), "operation": operation},
        )
        self.commit(updated)

    def set(self, value: Any) -> None:
        if self.strategy.strategy is RenderStrategy.ENUM_SELECT and self.choices is not None:
            value = _enum_literal(self.choices, value)
        elif self.strategy.strategy is RenderStrategy.NUMBER:
            value = _coerce_number(value)
        self.write(value)

    def toggle(self, on: bool) -> None:
        if self.strategy.object_flag:
            self.write({} if on else None, "toggle")
        else:
            self.write(bool(on), "toggle")

    def append(self) -> None:
        item: Any = {} if self.strategy.strategy is RenderStrategy.ARRAY_OF_STRUCT else ""
        self.write(append_item(self.current(), item), "append")

    def remove(self, index: int) -> None:
        self.write(remove_item(self.current(), int(index)), "remove")

    def set_item(self, index: int, value: Any) -> None:
        self.write(replace_item(self.current(), int(index), "" if value is None else value), "set_item")

    def move(self, source: int, destination: int) -> None:
        self.write(move_item(self.current(), int(source), int(destination)), "move")

    def add(self, name: str) -> None:
        self.write(add_unique(self.current(), name), "add")

    def add_entry(self) -> None:
        self.write(add_map_entry(self.current()), "add_entry")

    def remove_entry(self, key: str) -> None:
        self.write(remove_map_entry(self.current(), key), "remove_entry")

    def rename_key(self, old_key: str, new_key: str) -> None:
        if old_key == new_key:
            return
        self.write(rename_map_key(self.current(), old_key, new_key), "rename_key")

    def set_entry(self, key: str, value: Any) -> None:
        self.write(set_map_value(self.current(), key, "" if value is None else value), "set_entry")

    def open_rule_builder(self) -> RuleBuilder:
        return RuleBuilder(protocol=self.protocol)

    def apply_rule(self, builder: RuleBuilder) -> bool:
        updated, applied = builder.commit(self.tree, self.path)
        if applied:
            self.commit(updated)
        return applied

    def dispatch(self, operation: str, args: dict[str, Any] | None = None) -> None:
        args = args or {}
        if operation not in self.operations:
            raise ValueError(f"operation '{operation}' not supported for field {'.'.join(map(str, self.path))}")
        if operation == "set":
            self.set(args.get("value"))
        elif operation == "toggle":
            self.toggle(bool(args.get("on")))
        elif operation == "append":
            self.append()
        elif operation == "remove":
            self.remove(args["index"])
        elif operation == "set_item":
            self.set_item(args["index"], args.get("value"))
        elif operation == "move":
            self.move(args["source"], args["destination"])
        elif operation == "add":
            self.add(str(args.get("name") or ""))
        elif operation == "add_entry":
            self.add_entry()
        elif operation == "remove_entry":
            self.remove_entry(str(args["key"]))
        elif operation == "rename_key":
            self.rename_key(str(args["old_key"]), str(args.get("new_key") or ""))
        elif operation == "set_entry":
            self.set_entry(str(args["key"]), args.get("value"))
        elif operation == "apply_rule":
            self.apply_rule(RuleBuilder.from_dict(args.get("builder"), protocol=self.protocol))


@dataclass(slots=True)
class FieldView:
    key: str
    path: FieldPath
    label: str
    strategy: RenderStrategy
    description: str | None = None
    required: bool = False
    reference_kind: ReferenceKind | None = None
    object_flag: bool = False
    value: Any = None
    display: Any = None
    placeholder: str | None = None
    choices: list[str] | None = None
    clearable: bool = False
    searchable: bool = False
    minimum: float | None = None
    maximum: float | None = None
    rule_builder: bool = False
    children: list[FieldView] = field(default_factory=list)
    elements: list[list[FieldView]] = field(default_factory=list)
    entries: list[tuple[str, Any]] = field(default_factory=list)
    picker: ReferencePicker | None = None
    actions: FieldActions | None = None

    @property
    def editable(self) -> bool:
        return self.actions is not None

    def walk(self):
        yield self
        for child in self.children:
            yield from child.walk()
        for element in self.elements:
            for child in element:
                yield from child.walk()

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "key": self.key,
            "path": list(self.path),
            "label": self.label,
            "strategy": self.strategy.value,
            "description": self.description,
            "required": self.required,
            "value": self.value,
            "editable": self.editable,
        }
        if self.reference_kind is not None:
            payload["reference_kind"] = self.reference_kind.value
        if self.strategy is RenderStrategy.BOOLEAN_FLAG:
            payload["object_flag"] = self.object_flag
        if self.display is not None:
            payload["display"] = self.display
        if self.placeholder:
            payload["placeholder"] = self.placeholder
        if self.choices is not None:
            payload.update({"choices": self.choices, "clearable": self.clearable, "searchable": self.searchable})
        if self.minimum is not None or self.maximum is not None:
            payload.update({"minimum": self.minimum, "maximum": self.maximum})
        if self.rule_builder:
            payload["rule_builder"] = True
        if self.children:
            payload["children"] = [child.to_dict() for child in self.children]
        if self.strategy in {RenderStrategy.ARRAY_OF_STRUCT, RenderStrategy.ARRAY_OF_SCALAR} or self.elements:
            payload["elements"] = [[child.to_dict() for child in element] for element in self.elements]
        if self.strategy is RenderStrategy.KEY_VALUE_MAP:
            payload["entries"] = [[key, value] for key, value in self.entries]
        if self.picker is not None:
            payload["picker"] = self.picker.to_dict()
        if self.actions is not None:
            payload["operations"] = list(self.actions.operations)
        return payload


@dataclass(slots=True)
class Section:
    id: str
    title: str
    fields: list[FieldView] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "fields": [item.to_dict() for item in self.fields]}


@dataclass(slots=True)
class FormView:
    status: str
    mode: RenderMode
    message: str | None = None
    sections: list[Section] = field(default_factory=list)
    tabbed: bool = False
    active_tab: str | None = None

    def walk(self):
        for section in self.sections:
            for item in section.fields:
                yield from item.walk()

    def find(self, path: list[Any] | tuple[Any, ...]) -> FieldView | None:
        target = tuple(path)
        for item in self.walk():
            if item.path == target:
                return item
        return None

    def select_tab(self, tab_id: str) -> None:
        if any(section.id == tab_id for section in self.sections):
            self.active_tab = tab_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "mode": self.mode.value,
            "message": self.message,
            "tabbed": self.tabbed,
            "active_tab": self.active_tab,
            "sections": [section.to_dict() for section in self.sections],
        }


@dataclass(slots=True)
class _RenderContext:
    tree: Any
    mode: RenderMode
    protocol: str
    commit: Callable[[Any], None] | None
    resources: ResourceResolver | None
    entry_points: EntryPointLister | None

    @property
    def read_only(self) -> bool:
        return self.mode is RenderMode.READ_ONLY

    def actions(
        self,
        path: FieldPath,
        strategy: FieldStrategy,
        operations: tuple[str, ...],
        choices: list[Any] | None = None,
        element_index: int | None = None,
    ) -> FieldActions | None:
        if self.read_only or self.commit is None or not operations:
            return None
        return FieldActions(
            path=path,
            tree=self.tree,
            commit=self.commit,
            strategy=strategy,
            operations=operations,
            protocol=self.protocol,
            choices=choices,
            element_index=element_index,
        )

    def resource_picker(self, kind: ReferenceKind, exclude: tuple[str, ...] = ()) -> ReferencePicker | None:
        if self.read_only or self.resources is None:
            return None
        return ReferencePicker.for_resources(kind, self.resources, self.protocol, exclude=exclude)


def _scalar_display(value: Any) -> str:
    if value is None or value == "":
        return EMPTY_DISPLAY
    return str(value)


def _list_display(values: Any) -> Any:
    items = values if isinstance(values, list) else []
    if not items:
        return EMPTY_LIST_DISPLAY
    return [_scalar_display(item) for item in items]


def _operations_for(field_strategy: FieldStrategy) -> tuple[str, ...]:
    strategy = field_strategy.strategy
    if strategy is RenderStrategy.DOMAIN_REFERENCE:
        kind = field_strategy.reference_kind
        if kind is ReferenceKind.MIDDLEWARES:
            return ("set", "add", "remove", "move")
        if kind is ReferenceKind.ENTRY_POINTS:
            return ("set", "add", "remove")
        if kind is ReferenceKind.PARENT_REFS:
            return ("set", "append", "remove", "set_item")
        if kind is ReferenceKind.RULE:
            return ("set", "apply_rule")
        return ("set",)
    if strategy is RenderStrategy.BOOLEAN_FLAG:
        return ("toggle",)
    if strategy is RenderStrategy.KEY_VALUE_MAP:
        return ("add_entry", "remove_entry", "rename_key", "set_entry")
    if strategy is RenderStrategy.ARRAY_OF_STRUCT:
        return ("append", "remove")
    if strategy is RenderStrategy.ARRAY_OF_SCALAR:
        return ("append", "remove", "set_item")
    if strategy is RenderStrategy.NESTED_STRUCT:
        return ()
    return ("set",)


def _render_reference(ctx: _RenderContext, view: FieldView, node: dict[str, Any], field_strategy: FieldStrategy) -> None:
    kind = field_strategy.reference_kind
    value = view.value

    if kind in {ReferenceKind.MIDDLEWARES, ReferenceKind.ENTRY_POINTS, ReferenceKind.PARENT_REFS}:
        items = value if isinstance(value, list) else []
        view.value = items
        if ctx.read_only:
            view.display = _list_display(items)
            return
        if kind is ReferenceKind.MIDDLEWARES:
            view.picker = ctx.resource_picker(kind, exclude=tuple(str(item) for item in items))
        elif kind is ReferenceKind.ENTRY_POINTS and ctx.entry_points is not None:
            view.picker = ReferencePicker.for_entry_points(ctx.entry_points)
        elif kind is ReferenceKind.PARENT_REFS:
            element_strategy = FieldStrategy(RenderStrategy.DOMAIN_REFERENCE, reference_kind=ReferenceKind.PARENT_REFS)
            for index, item in enumerate(items):
                element_path = (*view.path, index)
                view.elements.append(
                    [
                        FieldView(
                            key=str(index),
                            path=element_path,
                            label=f"{view.label} {index + 1}",
                            strategy=RenderStrategy.DOMAIN_REFERENCE,
                            reference_kind=ReferenceKind.PARENT_REFS,
                            value=item,
                            placeholder="Select parent router",
                            picker=ctx.resource_picker(ReferenceKind.PARENT_REFS),
                            actions=ctx.actions(element_path, element_strategy, ("set",), element_index=index),
                        )
                    ]
                )
        return

    if ctx.read_only:
        view.display = _scalar_display(value)
        return

    if kind is ReferenceKind.RULE:
        view.rule_builder = ctx.protocol in RULE_PROTOCOLS
    elif kind is ReferenceKind.CERT_RESOLVER:
        view.placeholder = "e.g., letsencrypt"
    elif kind in {ReferenceKind.SERVICE, ReferenceKind.TLS_OPTIONS}:
        view.picker = ctx.resource_picker(kind)


def _render_field(
    ctx: _RenderContext,
    key: str,
    node: dict[str, Any],
    path: FieldPath,
    required: bool,
    in_array_item: bool = False,
) -> FieldView:
    node = node if isinstance(node, dict) else {}
    field_strategy = classify(key, node, in_array_item=in_array_item)
    strategy = field_strategy.strategy
    stored = get_path(ctx.tree, path)
    value = stored if stored is not None else node.get("default")

    description = node.get("description") if isinstance(node.get("description"), str) else None
    if not description and field_strategy.reference_kind is not None:
        if in_array_item and field_strategy.reference_kind is ReferenceKind.SERVICE:
            description = DEFAULT_DESCRIPTIONS.get(key, ITEM_SERVICE_DESCRIPTION)
        else:
            description = DEFAULT_DESCRIPTIONS.get(key)

    choices = list(node["enum"]) if strategy is RenderStrategy.ENUM_SELECT else None
    view = FieldView(
        key=key,
        path=path,
        label=field_label(key, node),
        strategy=strategy,
        description=description,
        required=required,
        reference_kind=field_strategy.reference_kind,
        object_flag=field_strategy.object_flag,
        value=value,
        actions=ctx.actions(path, field_strategy, _operations_for(field_strategy), choices=choices),
    )

    if strategy is RenderStrategy.DOMAIN_REFERENCE:
        _render_reference(ctx, view, node, field_strategy)
    elif strategy is RenderStrategy.ENUM_SELECT:
        view.choices = [str(choice) for choice in choices or []]
        view.clearable = not required
        view.searchable = len(view.choices) > SEARCHABLE_ENUM_THRESHOLD
        view.display = _scalar_display(value) if ctx.read_only else None
    elif strategy is RenderStrategy.NUMBER:
        view.minimum = node.get("minimum")
        view.maximum = node.get("maximum")
        view.display = (EMPTY_DISPLAY if value is None else str(value)) if ctx.read_only else None
    elif strategy is RenderStrategy.BOOLEAN_FLAG:
        enabled = isinstance(value, dict) if field_strategy.object_flag else bool(value)
        view.value = enabled
        view.display = ("Enabled" if enabled else "Disabled") if ctx.read_only else None
    elif strategy is RenderStrategy.KEY_VALUE_MAP:
        mapping = value if isinstance(value, dict) else {}
        view.value = mapping
        view.entries = list(mapping.items())
        if ctx.read_only:
            view.display = (
                [f"{entry_key}: {_scalar_display(entry_value)}" for entry_key, entry_value in view.entries]
                or EMPTY_LIST_DISPLAY
            )
    elif strategy is RenderStrategy.NESTED_STRUCT:
        view.value = None
        view.children = _render_properties(ctx, node["properties"], path, node.get("required") or [], in_array_item)
    elif strategy is RenderStrategy.ARRAY_OF_STRUCT:
        items = value if isinstance(value, list) else []
        view.value = None
        item_schema = node.get("items") or {}
        item_properties = item_schema.get("properties") if has_properties(item_schema) else {}
        item_required = item_schema.get("required") or []
        for index in range(len(items)):
            view.elements.append(
                _render_properties(ctx, item_properties, (*path, index), item_required, in_array_item=True)
            )
    elif strategy is RenderStrategy.ARRAY_OF_SCALAR:
        items = value if isinstance(value, list) else []
        view.value = items
        if ctx.read_only:
            view.display = _list_display(items)
        else:
            element_strategy = FieldStrategy(RenderStrategy.PLAIN_TEXT)
            for index, item in enumerate(items):
                element_path = (*path, index)
                view.elements.append(
                    [
                        FieldView(
                            key=str(index),
                            path=element_path,
                            label=f"{view.label} {index + 1}",
                            strategy=RenderStrategy.PLAIN_TEXT,
                            value=item,
                            actions=ctx.actions(element_path, element_strategy, ("set",), element_index=index),
                        )
                    ]
                )
    elif ctx.read_only:
        # plain, multiline and fallback text
        view.display = _scalar_display(value)

    return view


def _render_properties(
    ctx: _RenderContext,
    properties: dict[str, Any],
    base_path: FieldPath,
    required: list[str],
    in_array_item: bool = False,
) -> list[FieldView]:
    required_set = set(required)
    return [
        _render_field(ctx, key, node, (*base_path, key), key in required_set, in_array_item)
        for key, node in properties.items()
    ]


def render_form(
    schema: Any,
    value: Any,
    *,
    protocol: str = "http",
    mode: RenderMode | str = RenderMode.EDIT,
    on_change: Callable[[Any], None] | None = None,
    resources: ResourceResolver | None = None,
    entry_points: EntryPointLister | None = None,
    loading: bool = False,
    fetch_error: str | None = None,
) -> FormView:
    """Interpret ``schema`` into a tree of field views over ``value``.

    In edit mode every field carries :class:`FieldActions` that hand a full
    replacement tree to ``on_change``. Read-only mode produces display values
    only: no actions, no pickers. Schema problems are reported through
    ``FormView.status``, never raised.
    """
    mode = RenderMode(mode)
    if mode is RenderMode.EDIT and on_change is None:
        raise ValueError("on_change is required in edit mode")

    if loading:
        return FormView(status=STATUS_LOADING, mode=mode, message="Loading schema...")
    if fetch_error is not None:
        return FormView(status=STATUS_ERROR, mode=mode, message=fetch_error)

    try:
        resolved = resolve_schema(schema)
    except SchemaInvalidError as exc:
        logger.warning("schema_invalid", extra={"protocol": protocol, "error": str(exc)})
        return FormView(status=STATUS_INVALID, mode=mode, message=str(exc))
    if not isinstance(resolved, dict) or not isinstance(resolved.get("properties"), dict):
        logger.warning("schema_invalid", extra={"protocol": protocol, "error": "missing properties"})
        return FormView(status=STATUS_INVALID, mode=mode, message="The schema is invalid or empty.")

    ctx = _RenderContext(
        tree=value if value is not None else {},
        mode=mode,
        protocol=protocol,
        commit=on_change if mode is RenderMode.EDIT else None,
        resources=resources,
        entry_points=entry_points,
    )

    simple: dict[str, Any] = {}
    composite: dict[str, Any] = {}
    for key, node in resolved["properties"].items():
        if isinstance(node, dict) and is_composite(node):
            composite[key] = node
        else:
            simple[key] = node
    required = resolved.get("required") or []

    if not simple and len(composite) == 1:
        key, node = next(iter(composite.items()))
        fields = _render_properties(ctx, node["properties"], (key,), node.get("required") or [])
        return FormView(
            status=STATUS_READY,
            mode=mode,
            sections=[Section(id=key, title=field_label(key, node), fields=fields)],
            active_tab=key,
        )
    if not composite:
        fields = _render_properties(ctx, simple, (), required)
        return FormView(
            status=STATUS_READY,
            mode=mode,
            sections=[Section(id=GENERAL_TAB, title="General", fields=fields)],
            active_tab=GENERAL_TAB,
        )

    sections = []
    if simple:
        sections.append(Section(id=GENERAL_TAB, title="General", fields=_render_properties(ctx, simple, (), required)))
    for key, node in composite.items():
        sections.append(
            Section(
                id=key,
                title=field_label(key, node),
                fields=_render_properties(ctx, node["properties"], (key,), node.get("required") or []),
            )
        )
    return FormView(status=STATUS_READY, mode=mode, sections=sections, tabbed=True, active_tab=sections[0].id)

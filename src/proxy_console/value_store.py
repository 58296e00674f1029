from __future__ import annotations

from typing import Any, Sequence

PathSegment = str | int
FieldPath = tuple[PathSegment, ...]


def is_omitted(value: Any) -> bool:
    """Values that are never stored: the key is removed instead."""
    return value is None or (isinstance(value, str) and value == "")


def _is_index(segment: PathSegment) -> bool:
    return isinstance(segment, int) and not isinstance(segment, bool)


def _child(container: Any, segment: PathSegment) -> Any:
    if isinstance(container, dict):
        return container.get(segment)
    if isinstance(container, list) and _is_index(segment):
        if -len(container) <= segment < len(container):
            return container[segment]
    return None


def get_path(tree: Any, path: Sequence[PathSegment]) -> Any:
    current = tree
    for segment in path:
        if current is None:
            return None
        current = _child(current, segment)
    return current


def _copy_container(container: Any, next_segment: PathSegment) -> dict[Any, Any] | list[Any]:
    if isinstance(container, dict):
        return dict(container)
    if isinstance(container, list) and _is_index(next_segment):
        return list(container)
    return {}


def _assign(container: dict[Any, Any] | list[Any], segment: PathSegment, value: Any) -> None:
    if isinstance(container, dict):
        container[segment] = value
        return
    index = int(segment)
    if index < len(container):
        container[index] = value
        return
    container.extend([None] * (index - len(container)))
    container.append(value)


def _remove(container: dict[Any, Any] | list[Any], segment: PathSegment) -> None:
    if isinstance(container, dict):
        container.pop(segment, None)
    elif isinstance(segment, int) and -len(container) <= segment < len(container):
        del container[segment]


def _set(node: Any, path: Sequence[PathSegment], value: Any, omit: bool) -> Any:
    head, rest = path[0], path[1:]
    if isinstance(node, list) and not _is_index(head):
        # a key cannot address a list element; the list is kept as is
        return node
    updated = _copy_container(node, head)
    if not rest:
        if omit:
            _remove(updated, head)
        else:
            _assign(updated, head, value)
        return updated

    existing = _child(node, head) if isinstance(node, (dict, list)) else None
    if existing is None and omit:
        # nothing to delete below a missing branch
        return updated
    _assign(updated, head, _set(existing, rest, value, omit))
    return updated


def set_path(tree: Any, path: Sequence[PathSegment], value: Any) -> Any:
    """Return a copy of ``tree`` with ``value`` written at ``path``.

    Intermediate objects are created as needed. ``None`` and ``""`` delete the
    terminal key instead of storing it; ``0`` and ``False`` are stored. Only the
    containers along ``path`` are copied, the input is never mutated.
    """
    if not path:
        return {} if is_omitted(value) else value
    return _set(tree if tree is not None else {}, tuple(path), value, is_omitted(value))


def append_item(items: list[Any] | None, item: Any) -> list[Any]:
    return [*(items or []), item]


def remove_item(items: list[Any] | None, index: int) -> list[Any]:
    return [item for position, item in enumerate(items or []) if position != index]


def replace_item(items: list[Any] | None, index: int, item: Any) -> list[Any]:
    updated = list(items or [])
    if 0 <= index < len(updated):
        updated[index] = item
    return updated


def move_item(items: list[Any] | None, source: int, destination: int) -> list[Any]:
    updated = list(items or [])
    if not 0 <= source < len(updated):
        return updated
    moved = updated.pop(source)
    destination = max(0, min(destination, len(updated)))
    updated.insert(destination, moved)
    return updated


def add_map_entry(mapping: dict[str, Any] | None) -> dict[str, Any]:
    return {**(mapping or {}), "": ""}


def remove_map_entry(mapping: dict[str, Any] | None, key: str) -> dict[str, Any]:
    return {entry_key: value for entry_key, value in (mapping or {}).items() if entry_key != key}


def set_map_value(mapping: dict[str, Any] | None, key: str, value: Any) -> dict[str, Any]:
    return {**(mapping or {}), key: value}


def rename_map_key(mapping: dict[str, Any] | None, old_key: str, new_key: str) -> dict[str, Any]:
    updated = dict(mapping or {})
    if old_key == new_key:
        return updated
    value = updated.pop(old_key, None)
    if new_key.strip():
        updated[new_key] = value
    return updated

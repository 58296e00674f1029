from __future__ import annotations

import logging
from typing import Any

MAX_REF_DEPTH = 64
DEFINITION_KEYS = ("$defs", "definitions")
SERVICE_SUBTYPES = ("loadBalancer", "weighted", "mirroring", "failover")

logger = logging.getLogger(__name__)


class SchemaInvalidError(ValueError):
    """Raised when a schema cannot be interpreted for rendering."""


class SchemaFetchError(RuntimeError):
    """Raised by schema providers when a schema cannot be loaded."""


class _BranchNotFound:
    def __repr__(self) -> str:
        return "BRANCH_NOT_FOUND"

    def __bool__(self) -> bool:
        return False


BRANCH_NOT_FOUND = _BranchNotFound()


def _lookup_ref(ref: str, root: dict[str, Any]) -> Any:
    if not ref.startswith("#"):
        raise SchemaInvalidError(f"unsupported $ref: {ref}")
    segments = [segment for segment in ref[1:].lstrip("/").split("/") if segment]
    current: Any = root
    for segment in segments:
        segment = segment.replace("~1", "/").replace("~0", "~")
        if not isinstance(current, dict) or segment not in current:
            raise SchemaInvalidError(f"cannot resolve $ref: {ref}")
        current = current[segment]
    return current


def _resolve(node: Any, root: dict[str, Any], chain: tuple[str, ...]) -> Any:
    if isinstance(node, list):
        return [_resolve(item, root, chain) for item in node]
    if not isinstance(node, dict):
        return node

    ref = node.get("$ref")
    if isinstance(ref, str):
        if ref in chain:
            raise SchemaInvalidError(f"cyclic $ref: {' -> '.join((*chain, ref))}")
        if len(chain) >= MAX_REF_DEPTH:
            raise SchemaInvalidError(f"$ref nesting deeper than {MAX_REF_DEPTH} at {ref}")
        return _resolve(_lookup_ref(ref, root), root, (*chain, ref))

    return {
        key: _resolve(value, root, chain)
        for key, value in node.items()
        if key not in DEFINITION_KEYS
    }


def resolve_schema(schema: Any, root_schema: dict[str, Any] | None = None) -> Any:
    """Return a copy of ``schema`` with every ``$ref`` replaced by its target.

    Definitions blocks are dropped from the result. A pointer that refers back
    to one of its own ancestors raises :class:`SchemaInvalidError`.
    """
    root = root_schema if root_schema is not None else schema
    if not isinstance(root, dict):
        root = {}
    return _resolve(schema, root, ())


def _has_properties(node: Any) -> bool:
    return isinstance(node, dict) and isinstance(node.get("properties"), dict)


def extract_branch(root_schema: dict[str, Any], discriminator: str) -> dict[str, Any] | _BranchNotFound:
    resolved = resolve_schema(root_schema)
    if not isinstance(resolved, dict):
        return BRANCH_NOT_FOUND

    for option in resolved.get("oneOf") or []:
        if _has_properties(option) and discriminator in option["properties"]:
            branch = option["properties"][discriminator]
            if isinstance(branch, dict):
                logger.debug("schema_branch_extracted", extra={"discriminator": discriminator, "source": "oneOf"})
                return branch

    if _has_properties(resolved) and discriminator in resolved["properties"]:
        branch = resolved["properties"][discriminator]
        if isinstance(branch, dict):
            logger.debug("schema_branch_extracted", extra={"discriminator": discriminator, "source": "properties"})
            return branch

    logger.info("schema_branch_missing", extra={"discriminator": discriminator})
    return BRANCH_NOT_FOUND


def detect_service_subtype(config: dict[str, Any] | None) -> tuple[str, dict[str, Any]]:
    config = config or {}
    for subtype in ("weighted", "mirroring", "failover", "loadBalancer"):
        if config.get(subtype):
            return subtype, config[subtype]
    return "loadBalancer", config

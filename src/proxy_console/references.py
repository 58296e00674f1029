from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol

from .classifier import ReferenceKind
from .schema_resolver import SchemaFetchError
from .value_store import append_item

VALID_RESOURCE_TYPES: dict[str, tuple[str, ...]] = {
    "http": ("routers", "services", "middlewares", "serversTransport", "tls"),
    "tcp": ("routers", "services", "middlewares", "serversTransport", "tls"),
    "udp": ("routers", "services", "middlewares"),
}
RULE_PROTOCOLS = frozenset({"http", "tcp"})
BUNDLED_SCHEMA_DIR = Path(__file__).parent / "schemas"

PICKER_PENDING = "pending"
PICKER_READY = "ready"
PICKER_ERROR = "error"

# kinds backed by a resource list; RULE and CERT_RESOLVER are free text
REFERENCE_RESOURCE_TYPES: dict[ReferenceKind, str] = {
    ReferenceKind.MIDDLEWARES: "middlewares",
    ReferenceKind.SERVICE: "services",
    ReferenceKind.TLS_OPTIONS: "tls",
    ReferenceKind.PARENT_REFS: "routers",
}

logger = logging.getLogger(__name__)


class UnknownResourceTypeError(ValueError):
    """Raised for a protocol/type pair the console does not manage."""


def validate_resource_type(protocol: str, resource_type: str) -> None:
    if protocol not in VALID_RESOURCE_TYPES:
        raise UnknownResourceTypeError(f"unknown protocol: {protocol}")
    if resource_type not in VALID_RESOURCE_TYPES[protocol]:
        raise UnknownResourceTypeError(f"unknown type: {resource_type} for protocol: {protocol}")


class SchemaProvider(Protocol):
    def fetch_schema(self, protocol: str, resource_type: str) -> dict[str, Any]: ...


class ResourceResolver(Protocol):
    def list_resources(self, protocol: str, resource_type: str, include_external: bool) -> list[dict[str, Any]]: ...


class EntryPointLister(Protocol):
    def list_entry_points(self) -> list[dict[str, Any]]: ...


class FileSchemaProvider:
    """Serves ``<protocol>_<type>.json`` files, cached per protocol and type."""

    def __init__(self, schema_dir: str | Path | None = None) -> None:
        self.schema_dir = Path(schema_dir) if schema_dir else BUNDLED_SCHEMA_DIR
        self._cache: dict[tuple[str, str], dict[str, Any]] = {}

    def fetch_schema(self, protocol: str, resource_type: str) -> dict[str, Any]:
        validate_resource_type(protocol, resource_type)
        key = (protocol, resource_type)
        if key not in self._cache:
            path = self.schema_dir / f"{protocol}_{resource_type}.json"
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("schema_fetch_failed", extra={"protocol": protocol, "type": resource_type, "error": str(exc)})
                raise SchemaFetchError(f"failed to load schema for {protocol}/{resource_type}") from exc
            if not isinstance(payload, dict):
                raise SchemaFetchError(f"schema for {protocol}/{resource_type} is not an object")
            self._cache[key] = payload
        return self._cache[key]


@dataclass(slots=True, frozen=True)
class ResourceOption:
    name: str
    provider: str = ""
    enabled: bool = True
    source: str = ""

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ResourceOption:
        return cls(
            name=str(payload.get("name") or ""),
            provider=str(payload.get("provider") or ""),
            enabled=bool(payload.get("enabled", True)),
            source=str(payload.get("source") or ""),
        )

    @property
    def badges(self) -> list[str]:
        badges = []
        if self.source == "database":
            badges.append("DB")
        if not self.enabled:
            badges.append("Disabled")
        return badges

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "provider": self.provider,
            "enabled": self.enabled,
            "source": self.source,
            "badges": self.badges,
        }


@dataclass(slots=True)
class ReferencePicker:
    """Searchable choice over another resource kind, loaded on first use."""

    kind: ReferenceKind
    resource_type: str
    loader: Callable[[], list[dict[str, Any]]] = field(repr=False)
    exclude: tuple[str, ...] = ()
    status: str = PICKER_PENDING
    error: str | None = None
    _options: list[ResourceOption] | None = field(default=None, repr=False)

    @classmethod
    def for_resources(
        cls,
        kind: ReferenceKind,
        resolver: ResourceResolver,
        protocol: str,
        exclude: tuple[str, ...] = (),
    ) -> ReferencePicker:
        resource_type = REFERENCE_RESOURCE_TYPES[kind]
        return cls(
            kind=kind,
            resource_type=resource_type,
            loader=lambda: resolver.list_resources(protocol, resource_type, True),
            exclude=exclude,
        )

    @classmethod
    def for_entry_points(cls, lister: EntryPointLister) -> ReferencePicker:
        return cls(kind=ReferenceKind.ENTRY_POINTS, resource_type="entrypoints", loader=lister.list_entry_points)

    @property
    def disabled(self) -> bool:
        return self.status != PICKER_READY

    def load(self) -> list[ResourceOption]:
        if self._options is not None or self.status == PICKER_ERROR:
            return self._options or []
        try:
            payloads = self.loader()
        except Exception as exc:
            self.status = PICKER_ERROR
            self.error = str(exc)
            logger.warning("reference_lookup_failed", extra={"resource_type": self.resource_type, "error": str(exc)})
            return []
        self._options = [
            option
            for option in (ResourceOption.from_payload(payload) for payload in payloads)
            if option.name and option.name not in self.exclude
        ]
        self.status = PICKER_READY
        return self._options

    def to_dict(self, load: bool = False) -> dict[str, Any]:
        if load:
            self.load()
        return {
            "kind": self.kind.value,
            "resource_type": self.resource_type,
            "status": self.status,
            "disabled": self.disabled,
            "error": self.error,
            "options": [option.to_dict() for option in self._options or []],
        }


def add_unique(values: list[str] | None, name: str | None) -> list[str]:
    current = list(values or [])
    if not name or name in current:
        return current
    return append_item(current, name)

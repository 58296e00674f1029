from __future__ import annotations

import argparse
import json
from pathlib import Path

from .app import create_console_app
from .classifier import classify
from .schema_resolver import SchemaInvalidError, resolve_schema


def inspect_schema(path: str) -> int:
    """Print the render strategy chosen for every top-level property."""
    schema = json.loads(Path(path).read_text(encoding="utf-8"))
    try:
        resolved = resolve_schema(schema)
    except SchemaInvalidError as exc:
        print(f"invalid schema: {exc}")
        return 1
    properties = resolved.get("properties") if isinstance(resolved, dict) else None
    if not isinstance(properties, dict) or not properties:
        print("invalid schema: no properties")
        return 1
    for key, node in properties.items():
        field_strategy = classify(key, node)
        kind = f" ({field_strategy.reference_kind.value})" if field_strategy.reference_kind else ""
        print(f"{key}: {field_strategy.strategy.value}{kind}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the proxy configuration console")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="serve the console API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--db", default="./console.db")
    serve.add_argument("--schemas", default=None)

    inspect = subparsers.add_parser("inspect", help="classify the fields of a schema file")
    inspect.add_argument("schema")
    args = parser.parse_args()

    if args.command == "inspect":
        raise SystemExit(inspect_schema(args.schema))

    app = create_console_app(args.db, args.schemas)
    app.run(host=args.host, port=args.port, debug=False)


if __name__ == "__main__":
    main()

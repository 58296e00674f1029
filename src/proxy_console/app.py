from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from flask import Flask, abort, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .db import SqliteResourceResolver, init_db
from .references import FileSchemaProvider, UnknownResourceTypeError, validate_resource_type
from .renderer import STATUS_INVALID, FormView, RenderMode, render_form
from .rule_builder import RuleBuilder, RuleBuilderError
from .schema_resolver import BRANCH_NOT_FOUND, SchemaFetchError, detect_service_subtype, extract_branch


def _db_path(app: Flask) -> Path:
    return Path(app.config["DATABASE_PATH"])


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("proxy_console").setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        if _is_api_request():
            return jsonify({"error": error.description or "invalid request payload"}), 400
        return error

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        if _is_api_request():
            return jsonify({"error": error.description}), error.code
        return error

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        if _is_api_request():
            return jsonify({"error": "internal server error"}), 500
        raise error


def _json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        abort(400, description="invalid request payload")
    return payload


def _form_schema(
    root_schema: dict[str, Any],
    resource_type: str,
    value: Any,
    subtype: str | None,
) -> tuple[dict[str, Any] | None, str | None]:
    """Schema handed to the renderer; services and middlewares render one branch."""
    value = value if isinstance(value, dict) else {}
    if resource_type == "services" and "oneOf" in root_schema:
        subtype = subtype or detect_service_subtype(value)[0]
    elif resource_type == "middlewares":
        if not subtype:
            subtype = next(iter(value), None)
        if not subtype:
            return root_schema, None
    else:
        return root_schema, None
    branch = extract_branch(root_schema, subtype)
    if branch is BRANCH_NOT_FOUND:
        return None, subtype
    return {"type": "object", "properties": {subtype: branch}}, subtype


def create_console_app(database_path: str | None = None, schema_dir: str | None = None) -> Flask:
    app = Flask(__name__)
    _configure_observability(app, "console")
    _configure_error_handlers(app)
    app.config["DATABASE_PATH"] = database_path or os.environ.get("PROXY_CONSOLE_DB_PATH", "./console.db")
    app.config["SCHEMA_DIR"] = schema_dir or os.environ.get("PROXY_CONSOLE_SCHEMA_DIR") or None
    init_db(_db_path(app))

    schemas = FileSchemaProvider(app.config["SCHEMA_DIR"])
    resolver = SqliteResourceResolver(_db_path(app))

    def load_schema(protocol: str, resource_type: str) -> dict[str, Any]:
        try:
            validate_resource_type(protocol, resource_type)
        except UnknownResourceTypeError as exc:
            abort(400, description=str(exc))
        try:
            return schemas.fetch_schema(protocol, resource_type)
        except SchemaFetchError as exc:
            abort(404, description=str(exc))

    def build_form(
        protocol: str,
        resource_type: str,
        payload: dict[str, Any],
        mode: RenderMode,
        on_change: Any = None,
    ) -> FormView:
        root_schema = load_schema(protocol, resource_type)
        value = payload.get("value") or {}
        subtype = payload.get("subtype")
        if mode is RenderMode.READ_ONLY and resource_type == "services" and not subtype and isinstance(value, dict):
            subtype, unwrapped = detect_service_subtype(value)
            if subtype not in value:
                # bare configs display under the detected subtype
                value = {subtype: unwrapped}
        schema, subtype = _form_schema(root_schema, resource_type, value, subtype)
        if schema is None:
            app.logger.warning(
                "schema_invalid",
                extra={"protocol": protocol, "type": resource_type, "subtype": subtype},
            )
            return FormView(status=STATUS_INVALID, mode=mode, message=f"Could not extract schema for {subtype} {resource_type}")
        form = render_form(
            schema,
            value,
            protocol=protocol,
            mode=mode,
            on_change=on_change,
            resources=resolver,
            entry_points=resolver,
        )
        app.logger.debug(
            "schema_resolved",
            extra={"protocol": protocol, "type": resource_type, "status": form.status, "tabbed": form.tabbed},
        )
        return form

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.get("/api/<protocol>/<resource_type>/schema.json")
    def get_schema(protocol: str, resource_type: str) -> Any:
        return jsonify(load_schema(protocol, resource_type))

    @app.get("/api/<protocol>/<resource_type>")
    def list_resources(protocol: str, resource_type: str) -> Any:
        try:
            validate_resource_type(protocol, resource_type)
        except UnknownResourceTypeError as exc:
            abort(400, description=str(exc))
        include_external = request.args.get("traefik", "true").strip().lower() not in {"false", "0", "no"}
        return jsonify(resolver.list_resources(protocol, resource_type, include_external))

    @app.get("/api/entrypoints")
    def list_entry_points() -> Any:
        return jsonify(resolver.list_entry_points())

    @app.post("/api/<protocol>/<resource_type>/form")
    def render_resource_form(protocol: str, resource_type: str) -> Any:
        payload = _json_body()
        if payload.get("readonly"):
            form = build_form(protocol, resource_type, payload, RenderMode.READ_ONLY)
        else:
            # edit callbacks stay server side; the client replays them through /form/edit
            form = build_form(protocol, resource_type, payload, RenderMode.EDIT, on_change=lambda tree: None)
        return jsonify(form.to_dict())

    @app.post("/api/<protocol>/<resource_type>/form/edit")
    def edit_resource_form(protocol: str, resource_type: str) -> Any:
        payload = _json_body()
        path = payload.get("path")
        operation = str(payload.get("action") or "")
        if not isinstance(path, list) or not operation:
            abort(400, description="path and action are required")

        changes: list[Any] = []
        form = build_form(protocol, resource_type, payload, RenderMode.EDIT, on_change=changes.append)
        if form.status != "ready":
            abort(422, description=form.message or "form is not ready")
        target = form.find(path)
        if target is None or target.actions is None:
            abort(404, description=f"no editable field at {'.'.join(str(segment) for segment in path)}")
        try:
            target.actions.dispatch(operation, payload.get("args") or {})
        except (KeyError, TypeError, ValueError) as exc:
            abort(400, description=str(exc))
        value = changes[-1] if changes else (payload.get("value") or {})
        return jsonify({"value": value, "changed": bool(changes)})

    @app.post("/api/<protocol>/rules/build")
    def build_rule(protocol: str) -> Any:
        payload = _json_body()
        try:
            builder = RuleBuilder.from_dict(payload.get("builder"), protocol=protocol)
        except RuleBuilderError as exc:
            abort(400, description=str(exc))
        rule = builder.build_expression()
        app.logger.info("rule_built", extra={"protocol": protocol, "rule": rule})
        return jsonify({"rule": rule, "builder": builder.to_dict()})

    return app

import json

from proxy_console.app import create_console_app
from proxy_console.db import SqliteResourceResolver, connect, init_db, load_resource, save_resource


def make_client(tmp_path, schema_dir=None):
    app = create_console_app(str(tmp_path / "console.db"), schema_dir)
    return app, app.test_client()


def test_health_endpoint(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.get_json() == {"status": "ok", "app": "console"}


def test_schema_endpoint_serves_bundled_schema(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.get("/api/http/services/schema.json")

    assert response.status_code == 200
    payload = response.get_json()
    assert {"loadBalancer", "weighted", "mirroring", "failover"} == {
        next(iter(option["properties"])) for option in payload["oneOf"]
    }


def test_unknown_resource_type_is_rejected(tmp_path) -> None:
    _, client = make_client(tmp_path)

    response = client.get("/api/udp/tls/schema.json")
    assert response.status_code == 400
    assert "unknown type" in response.get_json()["error"]

    response = client.post("/api/smtp/routers/form", json={"value": {}})
    assert response.status_code == 400


def test_missing_schema_file_is_reported(tmp_path) -> None:
    schema_dir = tmp_path / "schemas"
    schema_dir.mkdir()
    (schema_dir / "http_routers.json").write_text("{not json", encoding="utf-8")
    _, client = make_client(tmp_path, str(schema_dir))

    assert client.get("/api/http/routers/schema.json").status_code == 404
    assert client.get("/api/http/services/schema.json").status_code == 404


def test_resource_listing_and_entry_points(tmp_path) -> None:
    app, client = make_client(tmp_path)
    conn = connect(app.config["DATABASE_PATH"])
    with conn:
        save_resource(conn, "http", "middlewares", "auth", {"basicAuth": {"users": []}})
        save_resource(conn, "http", "middlewares", "compress", {"compress": {}}, provider="docker", source="traefik")

    everything = client.get("/api/http/middlewares").get_json()
    assert [item["name"] for item in everything] == ["auth", "compress"]
    assert everything[0]["config"] == {"basicAuth": {"users": []}}

    database_only = client.get("/api/http/middlewares?traefik=false").get_json()
    assert [item["name"] for item in database_only] == ["auth"]

    entry_points = client.get("/api/entrypoints").get_json()
    assert [item["name"] for item in entry_points] == ["web", "websecure"]


def test_save_resource_updates_existing_row(tmp_path) -> None:
    db = tmp_path / "console.db"
    init_db(db)
    conn = connect(db)
    with conn:
        first = save_resource(conn, "http", "services", "api", {"loadBalancer": {"servers": []}})
        second = save_resource(conn, "http", "services", "api", {"weighted": {"services": []}}, enabled=False)

    assert first == second
    resources = SqliteResourceResolver(db).list_resources("http", "services")
    assert len(resources) == 1
    assert resources[0]["enabled"] is False
    assert resources[0]["config"] == {"weighted": {"services": []}}
    assert load_resource(connect(db), "http", "services", "api")["id"] == first
    assert load_resource(connect(db), "http", "services", "missing") is None


def test_init_db_is_idempotent(tmp_path) -> None:
    db = tmp_path / "console.db"
    init_db(db)
    init_db(db)
    conn = connect(db)
    count = conn.execute("SELECT COUNT(*) AS total FROM entrypoints").fetchone()["total"]
    assert count == 2


def test_router_form_in_edit_mode(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.post("/api/http/routers/form", json={"value": {"rule": "Host(`a.com`)"}})

    assert response.status_code == 200
    form = response.get_json()
    assert form["status"] == "ready"
    assert form["tabbed"] is True
    assert [section["id"] for section in form["sections"]] == ["general", "tls", "observability"]
    general = {item["key"]: item for item in form["sections"][0]["fields"]}
    assert general["rule"]["rule_builder"] is True
    assert general["rule"]["value"] == "Host(`a.com`)"
    assert general["service"]["picker"]["status"] == "pending"
    assert general["entryPoints"]["picker"]["resource_type"] == "entrypoints"


def test_router_form_read_only(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.post(
        "/api/http/routers/form",
        json={"value": {"rule": "Host(`a.com`)", "middlewares": []}, "readonly": True},
    )

    form = response.get_json()
    assert form["mode"] == "readonly"
    general = {item["key"]: item for item in form["sections"][0]["fields"]}
    assert general["middlewares"]["display"] == "None"
    assert general["service"]["display"] == "-"
    assert "picker" not in general["service"]
    assert general["rule"]["editable"] is False


def test_service_form_detects_subtype(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.post(
        "/api/http/services/form",
        json={"value": {"weighted": {"services": [{"name": "api", "weight": 3}]}}},
    )

    form = response.get_json()
    assert form["status"] == "ready"
    assert form["tabbed"] is False
    fields = {item["key"]: item for item in form["sections"][0]["fields"]}
    element = {item["key"]: item for item in fields["services"]["elements"][0]}
    assert element["name"]["path"] == ["weighted", "services", 0, "name"]
    assert element["name"]["reference_kind"] == "service"


def test_service_form_with_unknown_subtype_is_invalid(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.post("/api/tcp/services/form", json={"value": {}, "subtype": "mirroring"})

    assert response.status_code == 200
    form = response.get_json()
    assert form["status"] == "invalid"
    assert "mirroring" in form["message"]


def test_middleware_form_renders_selected_type(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.post("/api/http/middlewares/form", json={"value": {}, "subtype": "stripPrefix"})

    form = response.get_json()
    fields = form["sections"][0]["fields"]
    assert [item["path"] for item in fields] == [["stripPrefix", "prefixes"]]


def test_edit_endpoint_applies_field_action(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.post(
        "/api/http/services/form/edit",
        json={
            "value": {"loadBalancer": {"servers": [{"url": "http://a"}]}},
            "path": ["loadBalancer", "servers"],
            "action": "append",
        },
    )
    assert response.status_code == 200
    assert response.get_json() == {"value": {"loadBalancer": {"servers": [{"url": "http://a"}, {}]}}, "changed": True}

    response = client.post(
        "/api/http/services/form/edit",
        json={
            "value": {"loadBalancer": {"servers": []}},
            "path": ["loadBalancer", "healthCheck", "path"],
            "action": "set",
            "args": {"value": "/health"},
        },
    )
    assert response.get_json()["value"] == {"loadBalancer": {"servers": [], "healthCheck": {"path": "/health"}}}


def test_edit_endpoint_object_flag_toggle(tmp_path) -> None:
    _, client = make_client(tmp_path)
    body = {
        "value": {"failover": {"service": "a", "fallback": "b"}},
        "path": ["failover", "healthCheck"],
        "action": "toggle",
        "args": {"on": True},
    }
    enabled = client.post("/api/http/services/form/edit", json=body).get_json()["value"]
    assert enabled == {"failover": {"service": "a", "fallback": "b", "healthCheck": {}}}

    body.update({"value": enabled, "args": {"on": False}})
    disabled = client.post("/api/http/services/form/edit", json=body).get_json()["value"]
    assert disabled == {"failover": {"service": "a", "fallback": "b"}}


def test_edit_endpoint_validation(tmp_path) -> None:
    _, client = make_client(tmp_path)

    response = client.post("/api/http/routers/form/edit", json={"value": {}, "action": "set"})
    assert response.status_code == 400

    response = client.post(
        "/api/http/routers/form/edit",
        json={"value": {}, "path": ["nope"], "action": "set", "args": {"value": "x"}},
    )
    assert response.status_code == 404

    response = client.post(
        "/api/http/routers/form/edit",
        json={"value": {}, "path": ["priority"], "action": "toggle"},
    )
    assert response.status_code == 400

    response = client.post("/api/http/routers/form/edit", data="not json", content_type="application/json")
    assert response.status_code == 400


def test_edit_endpoint_applies_rule(tmp_path) -> None:
    _, client = make_client(tmp_path)
    builder = {
        "operator": "AND",
        "groups": [
            {
                "id": "1",
                "operator": "AND",
                "conditions": [
                    {"id": "2", "matcher": "Host", "value": "example.com"},
                    {"id": "3", "matcher": "PathPrefix", "value": "/api"},
                ],
            }
        ],
    }
    response = client.post(
        "/api/http/routers/form/edit",
        json={"value": {"service": "api"}, "path": ["rule"], "action": "apply_rule", "args": {"builder": builder}},
    )
    assert response.get_json()["value"] == {"service": "api", "rule": "(Host(`example.com`) && PathPrefix(`/api`))"}

    empty = client.post(
        "/api/http/routers/form/edit",
        json={"value": {"rule": "Host(`keep`)"}, "path": ["rule"], "action": "apply_rule", "args": {"builder": {}}},
    )
    assert empty.get_json() == {"value": {"rule": "Host(`keep`)"}, "changed": False}


def test_rule_build_endpoint(tmp_path) -> None:
    _, client = make_client(tmp_path)
    payload = {
        "builder": {
            "operator": "OR",
            "groups": [
                {"conditions": [{"matcher": "HostSNI", "value": "a.com"}]},
                {"conditions": [{"matcher": "ClientIP", "value": "10.0.0.0/8", "negate": True}]},
            ],
        }
    }
    response = client.post("/api/tcp/rules/build", json=payload)

    assert response.status_code == 200
    body = response.get_json()
    assert body["rule"] == "HostSNI(`a.com`) || !ClientIP(`10.0.0.0/8`)"
    assert len(body["builder"]["groups"]) == 2

    assert client.post("/api/udp/rules/build", json=payload).status_code == 400
    assert client.post("/api/http/rules/build", json=payload).status_code == 400


def test_malformed_rule_drafts_are_rejected(tmp_path) -> None:
    _, client = make_client(tmp_path)

    for builder in ({"groups": ["x"]}, "abc", {"next_id": "abc"}, {"groups": [{"conditions": ["Host"]}]}):
        response = client.post("/api/http/rules/build", json={"builder": builder})
        assert response.status_code == 400
        assert "error" in response.get_json()

    response = client.post(
        "/api/http/routers/form/edit",
        json={
            "value": {},
            "path": ["rule"],
            "action": "apply_rule",
            "args": {"builder": {"groups": [{"conditions": ["Host"]}]}},
        },
    )
    assert response.status_code == 400


def test_edit_endpoint_rejects_non_numeric_number(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.post(
        "/api/http/routers/form/edit",
        json={"value": {"priority": 5}, "path": ["priority"], "action": "set", "args": {"value": "abc"}},
    )

    assert response.status_code == 400
    assert "not a number" in response.get_json()["error"]


def test_read_only_service_form_unwraps_bare_config(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.post(
        "/api/http/services/form",
        json={"value": {"servers": [{"url": "http://a"}]}, "readonly": True},
    )

    form = response.get_json()
    assert form["status"] == "ready"
    fields = {item["key"]: item for item in form["sections"][0]["fields"]}
    assert fields["servers"]["path"] == ["loadBalancer", "servers"]
    assert fields["servers"]["value"] == [{"url": "http://a"}]

    wrapped = client.post(
        "/api/http/services/form",
        json={"value": {"weighted": {"services": [{"name": "api"}]}}, "readonly": True},
    ).get_json()
    fields = {item["key"]: item for item in wrapped["sections"][0]["fields"]}
    assert fields["services"]["path"] == ["weighted", "services"]


def test_unknown_api_route_returns_json_error(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.get("/api/http/routers/extra/path")

    assert response.status_code == 404
    assert "error" in json.loads(response.get_data(as_text=True))

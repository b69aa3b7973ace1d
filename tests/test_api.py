from miorah.config import get_settings


async def test_health(api_client) -> None:
    resp = await api_client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_responses_include_x_request_id(api_client) -> None:
    resp = await api_client.get("/health")
    assert resp.status_code == 200
    assert resp.headers.get("x-request-id")


async def test_incoming_request_id_is_echoed(api_client) -> None:
    resp = await api_client.get("/api/categories", headers={"x-request-id": "req-123"})
    assert resp.headers["x-request-id"] == "req-123"


async def test_validation_errors_are_flattened(api_client) -> None:
    resp = await api_client.post("/api/orders/guest", json={"products": [], "address": {}})
    assert resp.status_code == 400
    body = resp.json()
    assert {error["field"] for error in body["errors"]} == {"products", "amount"}
    assert body["msg"] == body["errors"][0]["msg"]


async def test_unknown_ids_are_404(api_client, make_user) -> None:
    auth = {"x-auth-token": make_user(admin=True)["token"]}
    missing = "00000000-0000-0000-0000-000000000000"
    assert (await api_client.get(f"/api/categories/{missing}")).json() == {"detail": "Category not found"}
    assert (await api_client.get(f"/api/users/find/{missing}", headers=auth)).status_code == 404
    assert (await api_client.get(f"/api/orders/admin/{missing}", headers=auth)).status_code == 404


async def test_protected_routes_need_a_token(api_client) -> None:
    resp = await api_client.get("/api/users")
    assert resp.status_code == 401
    assert resp.json() == {"detail": "No token, authorization denied"}


async def test_auth_header_name_is_configurable(api_client, make_user, monkeypatch) -> None:
    monkeypatch.setenv("AUTH_HEADER_NAME", "x-session")
    get_settings.cache_clear()
    user = make_user()

    me = await api_client.get("/api/auth", headers={"x-session": user["token"]})
    assert me.status_code == 200
    assert me.json()["id"] == user["id"]

    stale = await api_client.get("/api/auth", headers={"x-auth-token": user["token"]})
    assert stale.status_code == 401

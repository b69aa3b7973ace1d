from miorah.config import get_settings
from miorah.security.csrf import (
    TOKEN_EXPIRY_SECONDS,
    CSRFTokenStore,
    generate_csrf_token,
    is_exempt,
    validate_csrf_token,
)

EXEMPT = ["/api/auth/login", "/api/users", "/api/products", "/api/categories", "/api/orders/guest"]


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_generated_token_validates_against_its_hash() -> None:
    issued = generate_csrf_token(now=1000.0)
    assert len(issued.token) == 64
    assert len(issued.salt) == 32
    assert validate_csrf_token(issued.token, issued.salt, issued.hash, issued.issued_at, now=1001.0)
    assert not validate_csrf_token("0" * 64, issued.salt, issued.hash, issued.issued_at, now=1001.0)


def test_expired_token_fails_even_with_correct_hash() -> None:
    issued = generate_csrf_token(now=1000.0)
    assert validate_csrf_token(issued.token, issued.salt, issued.hash, issued.issued_at, now=1000.0 + TOKEN_EXPIRY_SECONDS)
    assert not validate_csrf_token(
        issued.token, issued.salt, issued.hash, issued.issued_at, now=1000.0 + TOKEN_EXPIRY_SECONDS + 1
    )


def test_store_reuses_live_tokens_and_reissues_expired_ones() -> None:
    clock = FakeClock()
    store = CSRFTokenStore(clock)

    first = store.get_or_issue("user-1")
    assert store.get_or_issue("user-1") == first
    assert store.validate("user-1", first.token)
    assert not store.validate("user-2", first.token)

    clock.now += TOKEN_EXPIRY_SECONDS + 1
    assert not store.validate("user-1", first.token)
    renewed = store.get_or_issue("user-1")
    assert renewed.token != first.token


def test_sweep_drops_expired_tokens_and_old_failures() -> None:
    clock = FakeClock()
    store = CSRFTokenStore(clock)
    store.issue("stale")
    store.record_failure("stale")
    clock.now += TOKEN_EXPIRY_SECONDS + 1
    store.issue("fresh")

    assert store.sweep() == 1
    assert store.get("stale") is None
    assert store.get("fresh") is not None
    assert store.recent_failures("stale") == 0


def test_failures_age_out_of_the_window() -> None:
    clock = FakeClock()
    store = CSRFTokenStore(clock)
    for _ in range(3):
        store.record_failure("10.0.0.1")
    assert store.recent_failures("10.0.0.1") == 3
    clock.now += 15 * 60
    assert store.recent_failures("10.0.0.1") == 0


def test_exempt_methods_and_paths() -> None:
    for method in ("GET", "HEAD", "OPTIONS", "get"):
        assert is_exempt(method, "/api/orders", EXEMPT)
    assert is_exempt("POST", "/api/auth/login", EXEMPT)
    assert is_exempt("PUT", "/api/products/inventory/bulk-update", EXEMPT)
    assert is_exempt("POST", "/api/orders/guest", EXEMPT)
    assert not is_exempt("POST", "/api/orders", EXEMPT)
    assert not is_exempt("DELETE", "/api/cart/123", EXEMPT)
    assert not is_exempt("POST", "/api/contact", EXEMPT)


async def test_csrf_token_endpoint_sets_cookie(api_client) -> None:
    resp = await api_client.get("/api/csrf-token")
    assert resp.status_code == 200
    payload = resp.json()
    assert len(payload["csrfToken"]) == 64
    assert payload["expires"] > 0

    cookie = resp.headers["set-cookie"]
    assert cookie.startswith(f"csrf-token={payload['csrfToken']}")
    assert "HttpOnly" in cookie
    assert "SameSite=strict" in cookie
    assert "Max-Age=3600" in cookie

    again = await api_client.get("/api/csrf-token")
    assert again.json()["csrfToken"] == payload["csrfToken"]


async def test_unsafe_requests_need_a_valid_token(api_client, make_user, csrf_headers) -> None:
    user = make_user()
    auth = {"x-auth-token": user["token"]}

    missing = await api_client.post("/api/cart", json={"products": []}, headers=auth)
    assert missing.status_code == 403
    assert missing.json()["error"] == "CSRF_TOKEN_MISSING"

    headers = await csrf_headers(user["token"])
    required = await api_client.post("/api/cart", json={"products": []}, headers=auth)
    assert required.status_code == 403
    assert required.json()["error"] == "CSRF_TOKEN_REQUIRED"

    invalid = await api_client.post("/api/cart", json={"products": []}, headers={**auth, "x-csrf-token": "f" * 64})
    assert invalid.status_code == 403
    assert invalid.json()["error"] == "CSRF_TOKEN_INVALID"

    ok = await api_client.post("/api/cart", json={"products": []}, headers=headers)
    assert ok.status_code == 200


async def test_token_can_be_passed_as_query_parameter(api_client, make_user, csrf_headers) -> None:
    user = make_user()
    headers = await csrf_headers(user["token"])
    resp = await api_client.post(
        "/api/cart",
        params={"_csrf": headers["x-csrf-token"]},
        json={"products": []},
        headers={"x-auth-token": user["token"]},
    )
    assert resp.status_code == 200


async def test_anonymous_token_does_not_cover_the_signed_in_session(api_client, make_user, csrf_headers) -> None:
    user = make_user()
    anonymous = await csrf_headers()
    resp = await api_client.post(
        "/api/cart",
        json={"products": []},
        headers={"x-auth-token": user["token"], "x-csrf-token": anonymous["x-csrf-token"]},
    )
    assert resp.status_code == 403
    assert resp.json()["error"] == "CSRF_TOKEN_MISSING"


async def test_exempt_routes_skip_the_check(api_client, mail) -> None:
    resp = await api_client.post(
        "/api/orders/guest",
        json={"products": [{"id": "p1"}], "amount": 10, "address": {"email": "guest@example.com"}},
    )
    assert resp.status_code == 200
    assert (await api_client.get("/api/products")).status_code == 200


async def test_repeated_failures_are_throttled(api_client, make_user) -> None:
    user = make_user()
    auth = {"x-auth-token": user["token"]}

    for _ in range(5):
        resp = await api_client.delete(f"/api/cart/{user['id']}", headers=auth)
        assert resp.status_code == 403

    throttled = await api_client.delete(f"/api/cart/{user['id']}", headers=auth)
    assert throttled.status_code == 429
    assert throttled.json()["error"] == "TOO_MANY_CSRF_FAILURES"

    # the IP itself stays usable
    assert (await api_client.get("/api/categories")).status_code == 200

    admin = make_user(admin=True)
    metrics = await api_client.get("/api/metrics", headers={"x-auth-token": admin["token"]})
    assert metrics.json()["counters"]["csrf_rejected_total"] == 5


async def test_double_submit_mode_compares_cookie_and_header(api_client, make_user, monkeypatch) -> None:
    monkeypatch.setenv("CSRF_MODE", "double_submit")
    get_settings.cache_clear()
    user = make_user()
    auth = {"x-auth-token": user["token"]}

    missing = await api_client.post("/api/cart", json={"products": []}, headers=auth)
    assert missing.status_code == 403
    assert missing.json()["error"] == "CSRF_TOKEN_MISSING"

    token = (await api_client.get("/api/csrf-token", headers=auth)).json()["csrfToken"]
    mismatch = await api_client.post("/api/cart", json={"products": []}, headers={**auth, "x-csrf-token": "nope"})
    assert mismatch.status_code == 403
    assert mismatch.json()["error"] == "CSRF_TOKEN_MISMATCH"

    ok = await api_client.post("/api/cart", json={"products": []}, headers={**auth, "x-csrf-token": token})
    assert ok.status_code == 200

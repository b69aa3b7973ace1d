from miorah.services.cart_service import sanitize_cart_items

RING = {"id": "p1", "name": "Gold Band", "price": 100}


def test_sanitize_drops_malformed_items_and_clamps_quantities() -> None:
    items = [
        {"id": "a", "product": RING, "quantity": 2.7, "itemTotal": 270.456},
        {"id": "b", "product": RING, "quantity": 500, "itemTotal": 50000},
        {"id": "c", "product": RING, "quantity": 0, "itemTotal": 0},
        {"id": "d", "product": RING, "quantity": "3", "itemTotal": 300},
        {"id": "e", "product": RING, "quantity": 1, "itemTotal": -5},
        {"id": "f", "product": RING, "quantity": True, "itemTotal": 100},
        {"product": RING, "quantity": 1, "itemTotal": 100},
        {"id": "g", "quantity": 1, "itemTotal": 100},
        "not-an-item",
        {"id": "h", "product": RING, "quantity": 0.5, "itemTotal": 50, "size": "7"},
    ]
    clean = sanitize_cart_items(items)
    assert [(i["id"], i["quantity"], i["itemTotal"]) for i in clean] == [
        ("a", 2, 270.46),
        ("b", 100, 50000.0),
        ("h", 1, 50.0),
    ]
    assert clean[2]["size"] == "7"


async def test_cart_lifecycle(api_client, make_user, csrf_headers) -> None:
    user = make_user()
    headers = await csrf_headers(user["token"])

    empty = await api_client.get(f"/api/cart/{user['id']}", headers=headers)
    assert empty.status_code == 200
    assert empty.json() is None

    items = [{"id": "line-1", "product": RING, "quantity": 2, "itemTotal": 200}]
    created = await api_client.post("/api/cart", json={"products": items}, headers=headers)
    assert created.status_code == 200
    assert created.json()["userId"] == user["id"]
    assert created.json()["products"] == items

    twice = await api_client.post("/api/cart", json={"products": items}, headers=headers)
    assert twice.status_code == 400
    assert twice.json()["detail"] == "Cart already exists for this user"

    saved = await api_client.put(
        f"/api/cart/{user['id']}",
        json={"products": [*items, {"id": "junk", "product": RING, "quantity": -1, "itemTotal": 0}]},
        headers=headers,
    )
    assert saved.status_code == 200
    assert saved.json()["products"] == items

    fetched = await api_client.get(f"/api/cart/{user['id']}", headers=headers)
    assert fetched.json()["id"] == created.json()["id"]

    deleted = await api_client.delete(f"/api/cart/{user['id']}", headers=headers)
    assert deleted.json() == {"msg": "Cart is successfully deleted"}
    again = await api_client.delete(f"/api/cart/{user['id']}", headers=headers)
    assert again.status_code == 404


async def test_put_creates_missing_cart(api_client, make_user, csrf_headers) -> None:
    user = make_user()
    headers = await csrf_headers(user["token"])
    resp = await api_client.put(f"/api/cart/{user['id']}", json={"products": []}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["products"] == []


async def test_carts_belong_to_their_owner(api_client, make_user, csrf_headers) -> None:
    owner = make_user()
    intruder = make_user()
    admin = make_user(admin=True)
    intruder_headers = await csrf_headers(intruder["token"])

    foreign = await api_client.post("/api/cart", json={"userId": owner["id"], "products": []}, headers=intruder_headers)
    assert foreign.status_code == 403

    peek = await api_client.get(f"/api/cart/{owner['id']}", headers=intruder_headers)
    assert peek.status_code == 403

    admin_headers = await csrf_headers(admin["token"])
    on_behalf = await api_client.post("/api/cart", json={"userId": owner["id"], "products": []}, headers=admin_headers)
    assert on_behalf.status_code == 200
    assert on_behalf.json()["userId"] == owner["id"]

    listing = await api_client.get("/api/cart", headers=admin_headers)
    assert [c["userId"] for c in listing.json()] == [owner["id"]]

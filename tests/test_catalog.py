import pytest

from miorah.config import get_settings

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 64


@pytest.fixture
def admin_auth(make_user) -> dict[str, str]:
    return {"x-auth-token": make_user(admin=True)["token"]}


async def _category(api_client, admin_auth, name: str = "Rings") -> dict:
    resp = await api_client.post("/api/categories", json={"name": name, "description": f"All {name.lower()}"}, headers=admin_auth)
    assert resp.status_code == 201
    return resp.json()


async def _product(api_client, admin_auth, category_id: str, **fields) -> dict:
    body = {
        "name": "Gold Band",
        "category_id": category_id,
        "description": "18k gold band",
        "price": 100,
        "stock_quantity": 5,
        **fields,
    }
    resp = await api_client.post("/api/products", json=body, headers=admin_auth)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def test_category_crud(api_client, admin_auth) -> None:
    category = await _category(api_client, admin_auth)
    assert category["name"] == "Rings"

    listed = await api_client.get("/api/categories")
    assert [c["id"] for c in listed.json()] == [category["id"]]

    renamed = await api_client.put(f"/api/categories/{category['id']}", json={"name": "Bands"}, headers=admin_auth)
    assert renamed.json()["name"] == "Bands"
    assert renamed.json()["description"] == "All rings"

    fetched = await api_client.get(f"/api/categories/{category['id']}")
    assert fetched.json()["name"] == "Bands"

    deleted = await api_client.delete(f"/api/categories/{category['id']}", headers=admin_auth)
    assert deleted.json() == {"msg": "Category successfully deleted"}
    assert (await api_client.get(f"/api/categories/{category['id']}")).status_code == 404


async def test_category_writes_need_admin(api_client, make_user) -> None:
    shopper = make_user()
    resp = await api_client.post("/api/categories", json={"name": "Sneaky"}, headers={"x-auth-token": shopper["token"]})
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Access denied. Admin only."


async def test_category_with_products_cannot_be_deleted(api_client, admin_auth) -> None:
    category = await _category(api_client, admin_auth)
    await _product(api_client, admin_auth, category["id"])
    resp = await api_client.delete(f"/api/categories/{category['id']}", headers=admin_auth)
    assert resp.status_code == 400


async def test_product_listing_filters(api_client, admin_auth) -> None:
    rings = await _category(api_client, admin_auth, "Rings")
    necklaces = await _category(api_client, admin_auth, "Necklaces")
    band = await _product(api_client, admin_auth, rings["id"])
    pendant = await _product(api_client, admin_auth, necklaces["id"], name="Pearl Pendant", is_featured=True)
    retired = await _product(api_client, admin_auth, rings["id"], name="Old Ring")

    removed = await api_client.delete(f"/api/products/{retired['id']}", headers=admin_auth)
    assert removed.json() == {"msg": "Product deleted successfully"}

    everything = (await api_client.get("/api/products")).json()
    assert [p["id"] for p in everything] == [band["id"], pendant["id"]]
    assert everything[0]["category"]["name"] == "Rings"

    by_category = (await api_client.get("/api/products", params={"category": necklaces["id"]})).json()
    assert [p["id"] for p in by_category] == [pendant["id"]]

    featured = (await api_client.get("/api/products", params={"featured": "true"})).json()
    assert [p["name"] for p in featured] == ["Pearl Pendant"]

    newest = (await api_client.get("/api/products", params={"new": "true"})).json()
    assert {p["id"] for p in newest} == {band["id"], pendant["id"]}

    # Soft-deleted products stay reachable by id.
    kept = await api_client.get(f"/api/products/{retired['id']}")
    assert kept.status_code == 200
    assert kept.json()["is_active"] is False


async def test_product_create_and_update(api_client, admin_auth) -> None:
    rings = await _category(api_client, admin_auth, "Rings")
    bangles = await _category(api_client, admin_auth, "Bangles")

    product = await _product(
        api_client,
        admin_auth,
        rings["id"],
        images=[{"image_url": "https://cdn.test/a.jpg"}, {"image_url": "https://cdn.test/b.jpg"}],
    )
    assert [img["is_primary"] for img in product["images"]] == [True, False]

    missing_category = await api_client.post(
        "/api/products",
        json={"name": "X", "category_id": "00000000-0000-0000-0000-000000000000", "description": "x", "price": 1},
        headers=admin_auth,
    )
    assert missing_category.status_code == 400
    assert missing_category.json()["detail"] == "Category not found"

    updated = await api_client.put(
        f"/api/products/{product['id']}",
        json={"price": 120.5, "category_id": bangles["id"], "images": [{"image_url": "https://cdn.test/c.jpg"}]},
        headers=admin_auth,
    )
    assert updated.status_code == 200
    body = updated.json()
    assert body["price"] == 120.5
    assert body["category"]["name"] == "Bangles"
    assert [img["image_url"] for img in body["images"]] == ["https://cdn.test/c.jpg"]

    negative = await api_client.put(f"/api/products/{product['id']}", json={"price": -1}, headers=admin_auth)
    assert negative.status_code == 400

    unknown = await api_client.get("/api/products/00000000-0000-0000-0000-000000000000")
    assert unknown.status_code == 404


async def test_inventory_reports(api_client, admin_auth) -> None:
    category = await _category(api_client, admin_auth)
    scarce = await _product(api_client, admin_auth, category["id"], name="Scarce", price=100, stock_quantity=5)
    await _product(api_client, admin_auth, category["id"], name="Plenty", price=50, stock_quantity=20)

    low = (await api_client.get("/api/products/inventory/low-stock", headers=admin_auth)).json()
    assert [p["id"] for p in low] == [scarce["id"]]

    stats = (await api_client.get("/api/products/inventory/stats", headers=admin_auth)).json()
    assert stats["totalProducts"] == 2
    assert stats["lowStockCount"] == 1
    assert stats["outOfStockCount"] == 0
    assert stats["lowStockThreshold"] == 10
    assert stats["inventoryValue"] == {"totalValue": 1500.0, "totalItems": 25}
    assert stats["productsByCategory"] == [{"category": "Rings", "count": 2, "totalValue": 1500.0}]
    assert stats["recentProducts"] == 2


async def test_bulk_updates(api_client, admin_auth) -> None:
    category = await _category(api_client, admin_auth)
    a = await _product(api_client, admin_auth, category["id"], name="A", price=100, stock_quantity=5)
    b = await _product(api_client, admin_auth, category["id"], name="B", price=50, stock_quantity=20)
    ids = [a["id"], b["id"]]

    priced = await api_client.put(
        "/api/products/inventory/bulk-update",
        json={"productIds": ids, "operation": "price_update", "updates": {"priceType": "percentage", "percentage": 10}},
        headers=admin_auth,
    )
    assert priced.json() == {"msg": "Bulk update completed successfully", "modifiedCount": 2, "operation": "price_update"}

    await api_client.put(
        "/api/products/inventory/bulk-update",
        json={"productIds": ids, "operation": "stock_update", "updates": {"stockType": "subtract", "quantity": 10}},
        headers=admin_auth,
    )
    after = {p["name"]: p for p in (await api_client.get("/api/products")).json()}
    assert after["A"]["price"] == pytest.approx(110)
    assert after["B"]["price"] == pytest.approx(55)
    assert after["A"]["stock_quantity"] == 0
    assert after["B"]["stock_quantity"] == 10

    bad = await api_client.put(
        "/api/products/inventory/bulk-update",
        json={"productIds": ids, "operation": "explode", "updates": {"x": 1}},
        headers=admin_auth,
    )
    assert bad.status_code == 400
    assert bad.json()["detail"] == "Invalid operation type"

    empty = await api_client.put(
        "/api/products/inventory/bulk-update", json={"productIds": [], "operation": "feature_update"}, headers=admin_auth
    )
    assert empty.json()["detail"] == "Please provide product IDs"


async def test_admin_listing_paginates_and_filters(api_client, admin_auth) -> None:
    category = await _category(api_client, admin_auth)
    await _product(api_client, admin_auth, category["id"], name="Silver Ring", price=30, stock_quantity=0)
    await _product(api_client, admin_auth, category["id"], name="Gold Ring", price=300, stock_quantity=40)
    await _product(api_client, admin_auth, category["id"], name="Anklet", price=20, stock_quantity=4)

    page = (
        await api_client.get("/api/products/admin/all", params={"limit": 2, "sortBy": "price", "sortOrder": "asc"}, headers=admin_auth)
    ).json()
    assert [p["name"] for p in page["products"]] == ["Anklet", "Silver Ring"]
    assert page["pagination"] == {
        "currentPage": 1,
        "totalPages": 2,
        "total": 3,
        "hasNextPage": True,
        "hasPrevPage": False,
        "limit": 2,
    }

    searched = (await api_client.get("/api/products/admin/all", params={"search": "ring"}, headers=admin_auth)).json()
    assert {p["name"] for p in searched["products"]} == {"Silver Ring", "Gold Ring"}

    out = (await api_client.get("/api/products/admin/all", params={"stockStatus": "out"}, headers=admin_auth)).json()
    assert [p["name"] for p in out["products"]] == ["Silver Ring"]


async def test_upload_creates_product_with_stored_images(api_client, admin_auth) -> None:
    category = await _category(api_client, admin_auth)
    resp = await api_client.post(
        "/api/products/upload",
        data={
            "name": "Emerald Ring",
            "category_id": category["id"],
            "description": "Green stone",
            "price": "250",
            "stock_quantity": "3",
            "is_featured": "true",
        },
        files=[
            ("product_images", ("front view.png", PNG, "image/png")),
            ("product_images", ("side.jpg", JPEG, "image/jpeg")),
        ],
        headers=admin_auth,
    )
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["product"]["is_featured"] is True
    assert body["product"]["price"] == 250
    assert [img["is_primary"] for img in body["images"]] == [True, False]

    first = body["images"][0]["image_url"]
    assert first.startswith("/uploads/products/") and first.endswith("_front_view.png")
    stored = get_settings().product_upload_path / first.rsplit("/", 1)[-1]
    assert stored.read_bytes() == PNG


async def test_upload_rejects_bad_files(api_client, admin_auth) -> None:
    category = await _category(api_client, admin_auth)
    form = {"name": "Fake", "category_id": category["id"], "description": "x", "price": "1"}

    resp = await api_client.post(
        "/api/products/upload",
        data=form,
        files=[("product_images", ("notes.txt", b"hello", "text/plain"))],
        headers=admin_auth,
    )
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "INVALID_FILE_TYPE"

    too_many = [("product_images", (f"{i}.png", PNG, "image/png")) for i in range(11)]
    resp = await api_client.post("/api/products/upload", data=form, files=too_many, headers=admin_auth)
    assert resp.json()["detail"]["error"] == "TOO_MANY_FILES"

    assert list(get_settings().product_upload_path.iterdir()) == []


async def test_image_management(api_client, admin_auth) -> None:
    category = await _category(api_client, admin_auth)
    product = await _product(api_client, admin_auth, category["id"])

    added = await api_client.put(
        f"/api/products/{product['id']}/upload",
        files=[
            ("product_images", ("one.png", PNG, "image/png")),
            ("product_images", ("two.webp", b"RIFF" + b"\x00" * 32, "image/webp")),
        ],
        headers=admin_auth,
    )
    assert added.status_code == 200, added.text
    body = added.json()
    assert len(body["newImages"]) == 2
    first, second = body["allImages"]
    assert first["is_primary"] and not second["is_primary"]

    promoted = await api_client.put(f"/api/products/images/{second['id']}/primary", headers=admin_auth)
    assert promoted.json()["is_primary"] is True
    images = (await api_client.get(f"/api/products/{product['id']}")).json()["images"]
    assert {img["id"]: img["is_primary"] for img in images} == {first["id"]: False, second["id"]: True}

    again = await api_client.put(f"/api/products/images/{second['id']}/primary", headers=admin_auth)
    assert again.json()["is_primary"] is True
    images = (await api_client.get(f"/api/products/{product['id']}")).json()["images"]
    assert {img["id"]: img["is_primary"] for img in images} == {first["id"]: False, second["id"]: True}

    removed = await api_client.delete(f"/api/products/images/{second['id']}", headers=admin_auth)
    assert removed.json() == {"msg": "Image removed"}
    images = (await api_client.get(f"/api/products/{product['id']}")).json()["images"]
    assert [(img["id"], img["is_primary"]) for img in images] == [(first["id"], True)]

    assert (await api_client.delete(f"/api/products/images/{second['id']}", headers=admin_auth)).status_code == 404
    stored = [p.name for p in get_settings().product_upload_path.iterdir()]
    assert len(stored) == 1 and stored[0] == first["image_url"].rsplit("/", 1)[-1]

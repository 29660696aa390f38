from pathlib import Path

import database
from conftest import add_product, auth, open_shop, register
from moderation import ProductStatus


def listing(client, headers=None, **params):
    res = client.get("/api/products", params=params, headers=headers or {})
    assert res.status_code == 200, res.text
    return [p["id"] for p in res.json()]


def test_create_always_pending(client, seller):
    headers, shop = seller
    product = add_product(client, headers, approved=True, status="approved")
    assert product["approved"] is False
    assert product["status"] == "pending"
    assert product["shopId"] == shop["id"]


def test_scenarios_approve_then_soft_delete(client, seller, admin_headers):
    headers, _ = seller
    pid = add_product(client, headers)["id"]

    # A: pending shows up for admins only
    assert pid in listing(client, admin_headers, includeAll="true", status="pending")
    assert pid not in listing(client)

    # B: approved shows up for customers, category compared case-insensitively
    res = client.patch(f"/api/products/{pid}/approve", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["approved"] is True
    assert res.json()["status"] == "approved"
    assert pid in listing(client, category="general")

    # C: soft delete hides it from customers, approved flag untouched
    res = client.delete(f"/api/products/{pid}", headers=headers)
    assert res.status_code == 200
    assert res.json()["status"] == "deleted"
    assert res.json()["approved"] is True
    assert pid not in listing(client)
    assert pid not in listing(client, category="general")
    assert pid in listing(client, admin_headers, includeAll="true", status="deleted")


def test_approve_twice_is_same_state(client, seller, admin_headers):
    headers, _ = seller
    pid = add_product(client, headers)["id"]
    first = client.patch(f"/api/products/{pid}/approve", headers=admin_headers).json()
    second = client.patch(f"/api/products/{pid}/approve", headers=admin_headers).json()
    assert first == second


def test_approve_requires_admin(client, seller):
    headers, _ = seller
    pid = add_product(client, headers)["id"]
    assert client.patch(f"/api/products/{pid}/approve", headers=headers).status_code == 403
    assert client.patch(f"/api/products/{pid}/approve").status_code == 401


def test_approve_bad_ids(client, admin_headers):
    assert client.patch("/api/products/abc/approve", headers=admin_headers).status_code == 400
    assert client.patch("/api/products/0/approve", headers=admin_headers).status_code == 400
    res = client.patch("/api/products/999/approve", headers=admin_headers)
    assert res.status_code == 404
    assert res.json() == {"message": "Product not found"}


def test_deleted_product_cannot_be_approved(client, seller, admin_headers):
    headers, _ = seller
    pid = add_product(client, headers)["id"]
    client.delete(f"/api/products/{pid}", headers=headers)
    res = client.patch(f"/api/products/{pid}/approve", headers=admin_headers)
    assert res.status_code == 409
    assert "message" in res.json()


def test_get_single_product(client, seller):
    headers, shop = seller
    pid = add_product(client, headers, description="Brand new")["id"]
    res = client.get(f"/api/products/{pid}")
    assert res.status_code == 200
    body = res.json()
    assert body["name"] == "Test"
    assert body["price"] == "100"
    assert body["mobile"] == "9000000001"
    assert body["shopName"] == "Ravi Electronics"
    assert res.headers["cache-control"] == "no-store, max-age=0"

    assert client.get("/api/products/999").status_code == 404
    assert client.get("/api/products/abc").status_code == 400


def test_edit_keeps_moderation_state(client, seller, admin_headers):
    headers, _ = seller
    pid = add_product(client, headers)["id"]
    client.patch(f"/api/products/{pid}/approve", headers=admin_headers)

    res = client.patch(f"/api/products/{pid}", json={"name": "Renamed", "price": 250}, headers=headers)
    assert res.status_code == 200
    body = res.json()
    assert body["name"] == "Renamed"
    assert body["price"] == "250"
    assert body["approved"] is True
    assert body["status"] == "approved"


def test_edit_with_multipart_image(client, seller):
    headers, _ = seller
    pid = add_product(client, headers)["id"]
    res = client.patch(
        f"/api/products/{pid}",
        data={"description": "With photo"},
        files={"image": ("my photo.png", b"\x89PNG", "image/png")},
        headers=headers,
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["description"] == "With photo"
    assert body["imageUrl"].startswith("/uploads/")
    assert body["imageUrl"].endswith("my_photo.png")
    assert body["status"] == "pending"
    assert client.get(body["imageUrl"]).content == b"\x89PNG"


def test_toggle_stock(client, seller, admin_headers):
    headers, _ = seller
    pid = add_product(client, headers)["id"]
    assert client.patch(f"/api/products/{pid}/stock", headers=headers).status_code == 409

    client.patch(f"/api/products/{pid}/approve", headers=admin_headers)
    res = client.patch(f"/api/products/{pid}/stock", headers=admin_headers)
    assert res.json()["status"] == "out_of_stock"
    assert pid in listing(client)

    res = client.patch(f"/api/products/{pid}/stock", headers=admin_headers)
    assert res.json()["status"] == "approved"


def test_status_written_through_edit(client, seller, admin_headers):
    headers, _ = seller
    pid = add_product(client, headers)["id"]
    client.patch(f"/api/products/{pid}/approve", headers=admin_headers)

    res = client.patch(f"/api/products/{pid}", json={"status": "out_of_stock"}, headers=admin_headers)
    assert res.json()["status"] == "out_of_stock"
    res = client.patch(f"/api/products/{pid}", json={"status": "available"}, headers=admin_headers)
    assert res.json()["status"] == "approved"
    res = client.patch(f"/api/products/{pid}", json={"status": "pending"}, headers=admin_headers)
    assert res.status_code == 400
    res = client.patch(f"/api/products/{pid}", json={"status": "deleted"}, headers=admin_headers)
    assert res.json()["status"] == "deleted"


def test_only_owner_or_admin_edits(client, seller):
    headers, _ = seller
    pid = add_product(client, headers)["id"]
    stranger = auth(register(client, "stranger")["token"])
    assert client.patch(f"/api/products/{pid}", json={"name": "x"}, headers=stranger).status_code == 403
    assert client.delete(f"/api/products/{pid}", headers=stranger).status_code == 403


def test_create_needs_a_shop(client):
    headers = auth(register(client, "nobody")["token"])
    res = client.post("/api/products", json={"name": "Lamp", "price": "5"}, headers=headers)
    assert res.status_code == 400
    assert client.post("/api/products", json={"name": "Lamp"}).status_code == 401


def test_create_rejects_bad_price(client, seller):
    headers, _ = seller
    res = client.post("/api/products", json={"name": "Lamp", "price": "cheap"}, headers=headers)
    assert res.status_code == 400
    assert "price" in res.json()["message"]


def test_create_in_someone_elses_shop(client, seller):
    _, shop = seller
    other, _ = open_shop(client, "meena")
    res = client.post("/api/products", json={"name": "Lamp", "shopId": shop["id"]}, headers=other)
    assert res.status_code == 403


def test_include_all_requires_admin_or_owner(client, seller):
    headers, shop = seller
    pid = add_product(client, headers)["id"]
    assert client.get("/api/products", params={"includeAll": "true"}).status_code == 401
    assert client.get("/api/products", params={"includeAll": "true"}, headers=headers).status_code == 403
    assert pid in listing(client, headers, shopId=shop["id"], includeAll="true")


def test_search_and_shop_filter(client, seller, admin_headers):
    headers, shop = seller
    kettle = add_product(client, headers, name="Steel Kettle")["id"]
    lamp = add_product(client, headers, name="Desk Lamp", description="LED")["id"]
    other_headers, other_shop = open_shop(client, "meena", name="Meena Kitchen")
    pan = add_product(client, other_headers, name="Frying Pan")["id"]
    for pid in (kettle, lamp, pan):
        client.patch(f"/api/products/{pid}/approve", headers=admin_headers)

    assert listing(client, search="kettle") == [kettle]
    assert listing(client, search="led") == [lamp]
    assert listing(client, search="meena kitchen") == [pan]
    assert listing(client, search="   ") == [kettle, lamp, pan]
    assert listing(client, shopId=shop["id"]) == [kettle, lamp]
    assert listing(client, shopId=other_shop["id"], search="pan") == [pan]


def test_listing_rejects_unknown_status(client):
    res = client.get("/api/products", params={"status": "sold"})
    assert res.status_code == 400


def test_approve_puts_out_of_stock_back_on_sale(client, seller, admin_headers):
    headers, _ = seller
    pid = add_product(client, headers)["id"]
    client.patch(f"/api/products/{pid}/approve", headers=admin_headers)
    client.patch(f"/api/products/{pid}/stock", headers=headers)

    res = client.patch(f"/api/products/{pid}/approve", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["status"] == "approved"
    assert res.json()["approved"] is True


def test_rejected_status_edit_keeps_fields(client, seller, settings):
    headers, _ = seller
    pid = add_product(client, headers)["id"]

    res = client.patch(f"/api/products/{pid}", json={"name": "Renamed", "status": "out_of_stock"}, headers=headers)
    assert res.status_code == 409
    res = client.patch(
        f"/api/products/{pid}",
        data={"name": "Renamed", "status": "out_of_stock"},
        files={"image": ("photo.png", b"\x89PNG", "image/png")},
        headers=headers,
    )
    assert res.status_code == 409

    product = client.get(f"/api/products/{pid}").json()
    assert product["name"] == "Test"
    assert product["imageUrl"] is None
    assert list(Path(settings.upload_dir).iterdir()) == []


def test_action_on_a_row_changed_underneath_is_rejected(client, seller, admin_headers, monkeypatch):
    headers, _ = seller
    pid = add_product(client, headers)["id"]
    client.patch(f"/api/products/{pid}/approve", headers=admin_headers)
    client.delete(f"/api/products/{pid}", headers=headers)

    # the store reads the row as still approved, but it was deleted in between
    monkeypatch.setattr(database, "parse_product_status", lambda value: ProductStatus.APPROVED)
    res = client.patch(f"/api/products/{pid}/approve", headers=admin_headers)
    assert res.status_code == 409
    monkeypatch.undo()

    product = client.get(f"/api/products/{pid}").json()
    assert product["status"] == "deleted"
    assert product["approved"] is True


def test_edit_rolls_back_when_status_moved_underneath(client, seller, admin_headers, monkeypatch):
    headers, _ = seller
    pid = add_product(client, headers)["id"]
    client.patch(f"/api/products/{pid}/approve", headers=admin_headers)

    monkeypatch.setattr(database, "parse_product_status", lambda value: ProductStatus.OUT_OF_STOCK)
    res = client.patch(f"/api/products/{pid}", json={"name": "Renamed", "status": "available"}, headers=headers)
    assert res.status_code == 409
    monkeypatch.undo()

    product = client.get(f"/api/products/{pid}").json()
    assert product["name"] == "Test"
    assert product["status"] == "approved"

import re

import main
from database import DataService

CHECKOUT_FORM = {
    "customer_name": "Amina Kaci",
    "customer_email": "amina@example.com",
    "full_name": "Amina Kaci",
    "address_line1": "12 Rue Didouche",
    "city": "Algiers",
    "state": "Algiers",
    "postal_code": "16000",
}


def _add(client, product, quantity=1):
    return client.post("/cart/items", json={"product_id": product["id"], "quantity": quantity})


# -------------------- Health --------------------

def test_health_reports_connection(client, catalog):
    body = client.get("/test").json()
    assert body["connection_status"] == "Connected"
    assert "products" in body["collections"]


def test_data_failures_become_generic_error(client):
    main.app.dependency_overrides[main.get_data] = lambda: DataService(None)
    res = client.get("/product/galaxy-s")
    assert res.status_code == 502
    assert res.json() == {"detail": main.GENERIC_ERROR}
    assert client.get("/products").status_code == 502


# -------------------- Storefront --------------------

def test_home_lists_featured(client, catalog):
    body = client.get("/").json()
    assert [p["slug"] for p in body["featured"]] == ["pixel-pro", "galaxy-s"]


def test_products_listing_filters(client, catalog):
    body = client.get("/products", params={"category": "phones", "sort_by": "price", "sort_order": "asc"}).json()
    assert [p["slug"] for p in body["products"]] == ["galaxy-s", "pixel-pro"]
    assert body["count"] == 2

    body = client.get("/products", params={"search": "cable"}).json()
    assert [p["slug"] for p in body["products"]] == ["usb-c-cable"]


def test_product_detail(client, catalog):
    body = client.get("/product/pixel-pro").json()
    assert body["category"]["slug"] == "phones"
    assert body["spec_rows"] == [
        {"label": "color options", "value": "black, white"},
        {"label": "weight grams", "value": "180"},
    ]
    assert client.get("/product/missing").status_code == 404


# -------------------- Cart --------------------

def test_cart_is_kept_per_browser(client, catalog):
    res = _add(client, catalog["products"]["galaxy-s"], 2)
    assert res.status_code == 200
    assert main.CART_COOKIE in res.cookies

    body = client.get("/cart").json()
    assert body["item_count"] == 2
    assert body["totals"] == {"subtotal": 1398.0, "shipping": 0.0, "tax": 111.84, "total": 1509.84}


def test_add_clamps_to_stock(client, catalog):
    body = _add(client, catalog["products"]["pixel-pro"], 99).json()
    assert body["items"][0]["quantity"] == 3


def test_adding_again_never_exceeds_stock(client, catalog):
    pixel = catalog["products"]["pixel-pro"]
    _add(client, pixel, 2)
    body = _add(client, pixel, 2).json()
    assert body["items"][0]["quantity"] == 3

    res = _add(client, pixel, 3)
    assert res.status_code == 200
    assert res.json()["items"][0]["quantity"] == 3
    assert res.json()["item_count"] == 3


def test_out_of_stock_and_unknown_products(client, catalog):
    assert _add(client, catalog["products"]["phone-case-clear"]).status_code == 409
    assert client.post("/cart/items", json={"product_id": "65f000000000000000000000"}).status_code == 404


def test_quantity_controls(client, catalog):
    cable = catalog["products"]["usb-c-cable"]
    _add(client, cable, 2)

    body = client.post(f"/cart/items/{cable['id']}/increment").json()
    assert body["items"][0]["quantity"] == 3
    body = client.patch(f"/cart/items/{cable['id']}", json={"quantity": 1}).json()
    assert body["free_shipping_remaining"] == 37.5
    body = client.post(f"/cart/items/{cable['id']}/decrement").json()
    assert body["items"] == []
    assert client.post(f"/cart/items/{cable['id']}/increment").status_code == 404


def test_remove_item(client, catalog):
    _add(client, catalog["products"]["usb-c-cable"])
    body = client.delete(f"/cart/items/{catalog['products']['usb-c-cable']['id']}").json()
    assert body["item_count"] == 0


# -------------------- Checkout --------------------

def test_checkout_with_empty_cart_redirects(client):
    res = client.get("/checkout", follow_redirects=False)
    assert res.status_code == 303
    assert res.headers["location"] == "/cart"


def test_checkout_places_order_and_empties_cart(client, catalog, data):
    _add(client, catalog["products"]["usb-c-cable"], 2)
    assert client.get("/checkout").json()["totals"]["total"] == 36.99

    res = client.post("/checkout", json=CHECKOUT_FORM)
    assert res.status_code == 201
    body = res.json()
    assert re.match(r"^ISQ-[A-Z0-9]+-[A-Z0-9]{4}$", body["order_number"])
    assert body["customer_email"] == "amina@example.com"
    assert body["order"]["status"] == "pending"
    assert body["order"]["shipping_address"]["country"] == "United States"

    assert client.get("/cart").json()["items"] == []
    assert data.count("orders") == 1


def test_checkout_form_is_validated(client, catalog):
    _add(client, catalog["products"]["usb-c-cable"])
    res = client.post("/checkout", json={**CHECKOUT_FORM, "customer_email": "not-an-email"})
    assert res.status_code == 422
    assert client.get("/cart").json()["item_count"] == 1


# -------------------- Auth --------------------

def test_register_login_and_logout(client):
    res = client.post("/auth/register", json={"name": "Sam", "email": "sam@example.com", "password": "pw12345"})
    assert res.status_code == 200
    dup = client.post("/auth/register", json={"name": "Sam", "email": "sam@example.com", "password": "x"})
    assert dup.status_code == 400

    assert client.post("/auth/login", json={"email": "sam@example.com", "password": "wrong"}).status_code == 401
    token = client.post("/auth/login", json={"email": "sam@example.com", "password": "pw12345"}).json()["access_token"]
    headers = {"Authorization": f"Bearer {token}"}
    assert client.get("/me", headers=headers).json()["email"] == "sam@example.com"

    assert client.post("/auth/logout", headers=headers).json() == {"ok": True}
    assert client.get("/me", headers=headers).status_code == 401


def test_admin_routes_require_a_token(client):
    assert client.get("/admin/dashboard").status_code == 401
    assert client.get("/admin/orders", headers={"Authorization": "Bearer nope"}).status_code == 401


# -------------------- Admin --------------------

def test_admin_dashboard_and_orders(client, catalog, admin_headers):
    _add(client, catalog["products"]["galaxy-s"])
    client.post("/checkout", json=CHECKOUT_FORM)

    home = client.get("/admin/dashboard", headers=admin_headers).json()
    assert home["total_orders"] == 1
    assert home["total_products"] == 4
    assert home["total_revenue"] == 754.92

    body = client.get("/admin/orders", params={"customer": "amina", "status": "pending"}, headers=admin_headers).json()
    assert len(body["orders"]) == 1
    assert body["orders"][0]["item_count"] == 1
    assert body["active_filter_count"] == 2

    assert client.get("/admin/orders", params={"customer": "nobody"}, headers=admin_headers).json()["orders"] == []

    order_id = body["orders"][0]["id"]
    items = client.get(f"/admin/orders/{order_id}/items", headers=admin_headers).json()
    assert items == [{"title": "Galaxy S", "quantity": 1}]

    res = client.delete(f"/admin/orders/{order_id}", headers=admin_headers)
    assert res.status_code == 400
    res = client.delete(f"/admin/orders/{order_id}", params={"confirm": True}, headers=admin_headers)
    assert res.json() == {"ok": True, "remaining": 0}


def test_admin_product_validation_errors(client, catalog, admin_headers):
    res = client.post("/admin/products", json={"title": "Lamp", "price": "0"}, headers=admin_headers)
    assert res.status_code == 422
    assert res.json()["errors"] == {"category_id": "Required", "price": "Invalid", "stock_quantity": "Invalid"}


def test_admin_product_create_and_update(client, catalog, admin_headers):
    form = {"title": "Desk Lamp", "category_id": catalog["accessories"]["id"], "price": 24.5, "stock_quantity": 7}
    res = client.post("/admin/products", json=form, headers=admin_headers)
    assert res.status_code == 201
    product = res.json()["product"]
    assert product["slug"] == "desk-lamp"

    res = client.put(f"/admin/products/{product['id']}", json={**form, "title": "Desk Lamp XL"}, headers=admin_headers)
    assert res.json()["product"]["slug"] == "desk-lamp-xl"
    assert client.get("/product/desk-lamp-xl").status_code == 200

    res = client.delete(f"/admin/products/{product['id']}", headers=admin_headers)
    assert len(res.json()["products"]) == 4


def test_admin_image_upload_is_served(client, admin_headers, bucket):
    bucket.fail_names = {"broken"}
    files = [
        ("files", ("front.png", b"\x89PNG-front", "image/png")),
        ("files", ("broken.png", b"\x89PNG-bad", "image/png")),
    ]
    res = client.post("/admin/products/images", files=files, headers=admin_headers)
    images = res.json()["images"]
    assert len(images) == 1

    served = client.get(images[0])
    assert served.status_code == 200
    assert served.content == b"\x89PNG-front"
    assert served.headers["content-type"] == "image/png"
    assert client.get("/storage/issaqimages/products/missing.png").status_code == 404


def test_admin_categories(client, catalog, admin_headers):
    body = client.get("/admin/categories", headers=admin_headers).json()
    assert {c["slug"]: c["product_count"] for c in body["categories"]} == {"accessories": 2, "phones": 2}

    phones = catalog["phones"]["id"]
    assert client.post(f"/admin/categories/{phones}/edit", headers=admin_headers).json() == {"ok": True}

    res = client.delete(f"/admin/categories/{phones}", headers=admin_headers)
    assert res.status_code == 400
    res = client.delete(f"/admin/categories/{phones}", params={"confirm": "true"}, headers=admin_headers)
    assert res.status_code == 200
    assert phones not in res.json()["product_counts"]


def test_admin_reads_report_data_failures(client, catalog, admin_headers):
    main.app.dependency_overrides[main.get_data] = lambda: DataService(None)
    expected = {
        "/admin/orders": "Failed to load orders",
        "/admin/products": "Failed to load products",
        "/admin/categories": "Failed to load categories",
        "/admin/dashboard": "Failed to load dashboard",
    }
    for path, detail in expected.items():
        res = client.get(path, headers=admin_headers)
        assert res.status_code == 502
        assert res.json() == {"detail": detail}

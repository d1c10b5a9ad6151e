"""API tests for the catalog service stock endpoints.

They run the FastAPI app in-process on sqlite and check the stock rules
the checkout relies on: unlimited stock is never decremented and a
decrement never takes stock below zero.
"""


def test_put_then_get_product(catalog_client):
    r = catalog_client.put("/products/CHOC-70", json={"stock": 5, "title": "Chocolate 70%"})
    assert r.status_code == 200
    r = catalog_client.get("/products/CHOC-70")
    assert r.status_code == 200
    assert r.json()["stock"] == 5
    assert r.json()["title"] == "Chocolate 70%"


def test_get_unknown_product_returns_404(catalog_client):
    r = catalog_client.get("/products/NOPE")
    assert r.status_code == 404


def test_decrement_subtracts_and_reports_previous(catalog_client):
    catalog_client.put("/products/X", json={"stock": 5})
    r = catalog_client.post("/products/X/decrement", json={"quantity": 2})
    assert r.status_code == 200
    body = r.json()
    assert body["previous"] == 5
    assert body["stock"] == 3


def test_decrement_clamps_at_zero(catalog_client):
    catalog_client.put("/products/Y", json={"stock": 2})
    r = catalog_client.post("/products/Y/decrement", json={"quantity": 10})
    assert r.status_code == 200
    assert r.json()["stock"] == 0
    assert catalog_client.get("/products/Y").json()["stock"] == 0


def test_decrement_leaves_unlimited_stock_untouched(catalog_client):
    catalog_client.put("/products/GIFT-CARD", json={"stock": None})
    r = catalog_client.post("/products/GIFT-CARD/decrement", json={"quantity": 3})
    assert r.status_code == 200
    assert r.json()["stock"] is None


def test_decrement_unknown_product_returns_404(catalog_client):
    r = catalog_client.post("/products/GHOST/decrement", json={"quantity": 1})
    assert r.status_code == 404


def test_decrement_rejects_non_positive_quantity(catalog_client):
    catalog_client.put("/products/Z", json={"stock": 1})
    r = catalog_client.post("/products/Z/decrement", json={"quantity": 0})
    assert r.status_code == 422


def test_put_rejects_negative_stock(catalog_client):
    r = catalog_client.put("/products/Z", json={"stock": -1})
    assert r.status_code == 422


def test_responses_echo_request_id(catalog_client):
    r = catalog_client.get("/health", headers={"X-Request-ID": "rid-123"})
    assert r.status_code == 200
    assert r.headers["X-Request-ID"] == "rid-123"


def test_keyed_decrement_replay_returns_first_outcome(catalog_client):
    catalog_client.put("/products/X", json={"stock": 5})
    headers = {"Idempotency-Key": "ref-1:X"}
    first = catalog_client.post("/products/X/decrement", json={"quantity": 2}, headers=headers)
    again = catalog_client.post("/products/X/decrement", json={"quantity": 2}, headers=headers)
    assert first.status_code == again.status_code == 200
    assert again.json() == first.json() == {"ref": "X", "title": "", "stock": 3, "previous": 5}
    assert catalog_client.get("/products/X").json()["stock"] == 3


def test_distinct_keys_each_decrement(catalog_client):
    catalog_client.put("/products/X", json={"stock": 5})
    catalog_client.post("/products/X/decrement", json={"quantity": 2}, headers={"Idempotency-Key": "a:X"})
    catalog_client.post("/products/X/decrement", json={"quantity": 2}, headers={"Idempotency-Key": "b:X"})
    assert catalog_client.get("/products/X").json()["stock"] == 1


def test_key_reused_with_other_quantity_returns_409(catalog_client):
    catalog_client.put("/products/X", json={"stock": 5})
    headers = {"Idempotency-Key": "ref-1:X"}
    catalog_client.post("/products/X/decrement", json={"quantity": 2}, headers=headers)
    r = catalog_client.post("/products/X/decrement", json={"quantity": 3}, headers=headers)
    assert r.status_code == 409
    assert r.json()["detail"] == "IDEMPOTENCY_CONFLICT"
    assert catalog_client.get("/products/X").json()["stock"] == 3

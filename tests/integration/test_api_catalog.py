"""API tests for products and categories."""

from __future__ import annotations

from bson import ObjectId


class TestListProducts:
    def test_pagination(self, client, make_product) -> None:
        for i in range(25):
            make_product(f"Product {i}")

        response = client.get("/api/products", params={"page": 2, "limit": 10})

        assert response.status_code == 200
        body = response.json()
        assert len(body["items"]) == 10
        assert body["totalCount"] == 25
        assert body["totalPages"] == 3
        assert body["page"] == 2
        assert body["limit"] == 10

    def test_last_page_is_partial(self, client, make_product) -> None:
        for i in range(25):
            make_product(f"Product {i}")

        body = client.get("/api/products", params={"page": 3, "limit": 10}).json()

        assert len(body["items"]) == 5

    def test_inactive_products_hidden(self, client, make_product) -> None:
        make_product("Visible")
        make_product("Hidden", isActive=False)

        names = [p["name"] for p in client.get("/api/products").json()["items"]]

        assert names == ["Visible"]

    def test_filter_by_category_slug(self, client, make_category, make_product) -> None:
        books = make_category("books")
        make_product("Novel", categoryId=str(books["_id"]))
        make_product("Card")

        body = client.get("/api/products", params={"category": "books"}).json()

        assert [p["name"] for p in body["items"]] == ["Novel"]
        assert body["items"][0]["category"]["slug"] == "books"

    def test_unknown_category_slug_is_empty(self, client, make_product) -> None:
        make_product()

        body = client.get("/api/products", params={"category": "nope"}).json()

        assert body["items"] == []
        assert body["totalCount"] == 0

    def test_featured_filter(self, client, make_product) -> None:
        make_product("Plain")
        make_product("Star", featured=True)

        body = client.get("/api/products", params={"featured": "true"}).json()

        assert [p["name"] for p in body["items"]] == ["Star"]

    def test_query_matches_name_description_and_sku(self, client, make_product) -> None:
        make_product("Metal Holder", sku="MH-1")
        make_product("Glass Card", sku="GC-1", description="minimal METAL look")
        make_product("Novel", sku="BK-METAL")
        make_product("Blanket", sku="HM-1")

        body = client.get("/api/products", params={"q": "metal"}).json()

        assert sorted(p["name"] for p in body["items"]) == ["Glass Card", "Metal Holder", "Novel"]

    def test_invalid_paging_rejected(self, client) -> None:
        response = client.get("/api/products", params={"page": 0})

        assert response.status_code == 400
        assert "error" in response.json()


class TestGetProduct:
    def test_includes_category_and_reviews(self, client, repo, make_product, customer) -> None:
        product = make_product()
        product_id = str(product["_id"])
        repo.insert("review", {"userId": customer[0].id, "productId": product_id, "rating": 4})

        body = client.get(f"/api/products/{product_id}").json()

        assert body["id"] == product_id
        assert body["category"]["slug"] == "default"
        assert body["reviews"][0]["rating"] == 4
        assert body["reviews"][0]["user"]["name"] == "Alice"

    def test_not_found(self, client) -> None:
        response = client.get(f"/api/products/{ObjectId()}")

        assert response.status_code == 404
        assert response.json() == {"error": "Product not found"}

    def test_malformed_id_is_not_found(self, client) -> None:
        assert client.get("/api/products/not-an-id").status_code == 404


class TestWriteProducts:
    def payload(self, category_id: str, **extra):
        return dict(
            {
                "name": "Glass Card",
                "price": 129.0,
                "categoryId": category_id,
                "stock": 3,
                "variants": [{"name": "Frost", "price": 129.0, "attributes": {"color": "frost"}}],
            },
            **extra,
        )

    def test_admin_creates_product_with_variants(self, client, admin, make_category) -> None:
        category = make_category()

        response = client.post(
            "/api/products", json=self.payload(str(category["_id"])), headers=admin[1]
        )

        assert response.status_code == 201
        body = response.json()
        assert body["rating"] == 0.0
        assert body["reviewCount"] == 0
        assert body["variants"][0]["name"] == "Frost"
        assert body["variants"][0]["id"]

    def test_derived_fields_cannot_be_set(self, client, admin, make_category) -> None:
        category = make_category()

        body = client.post(
            "/api/products",
            json=self.payload(str(category["_id"]), rating=5, reviewCount=100),
            headers=admin[1],
        ).json()

        assert body["rating"] == 0.0
        assert body["reviewCount"] == 0

    def test_unknown_category_rejected(self, client, admin) -> None:
        response = client.post("/api/products", json=self.payload(str(ObjectId())), headers=admin[1])

        assert response.status_code == 404

    def test_customer_cannot_create(self, client, customer, make_category) -> None:
        category = make_category()

        response = client.post(
            "/api/products", json=self.payload(str(category["_id"])), headers=customer[1]
        )

        assert response.status_code == 403

    def test_anonymous_cannot_create(self, client, make_category) -> None:
        category = make_category()

        response = client.post("/api/products", json=self.payload(str(category["_id"])))

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_update_replaces_variants(self, client, admin, repo, make_product) -> None:
        product = make_product(variants=[{"id": "v1", "name": "Red"}, {"id": "v2", "name": "Blue"}])

        response = client.put(
            f"/api/products/{product['_id']}",
            json={"price": 15.5, "variants": [{"name": "Green", "price": 15.5}], "rating": 5},
            headers=admin[1],
        )

        assert response.status_code == 200
        stored = repo.find_by_id("product", product["_id"])
        assert stored["price"] == 15.5
        assert [v["name"] for v in stored["variants"]] == ["Green"]
        assert stored["rating"] == 0.0

    def test_category_id_is_stored_canonically(self, client, admin, repo, make_category) -> None:
        category = make_category()
        category_id = str(category["_id"])

        body = client.post(
            "/api/products", json=self.payload(category_id.upper()), headers=admin[1]
        ).json()
        response = client.delete(f"/api/categories/{category_id}", headers=admin[1])

        assert body["categoryId"] == category_id
        assert response.status_code == 400
        assert response.json() == {"error": "Cannot delete category with products"}
        assert repo.find_by_id("category", category_id) is not None

    def test_update_stores_category_id_canonically(self, client, admin, repo, make_product, make_category) -> None:
        product = make_product()
        books = make_category("books")

        client.put(
            f"/api/products/{product['_id']}",
            json={"categoryId": str(books["_id"]).upper()},
            headers=admin[1],
        )

        assert repo.find_by_id("product", product["_id"])["categoryId"] == str(books["_id"])

    def test_update_missing_product(self, client, admin) -> None:
        response = client.put(f"/api/products/{ObjectId()}", json={"price": 1}, headers=admin[1])

        assert response.status_code == 404

    def test_customer_cannot_delete(self, client, customer, repo, make_product) -> None:
        product = make_product()

        response = client.delete(f"/api/products/{product['_id']}", headers=customer[1])

        assert response.status_code == 403
        assert repo.find_by_id("product", product["_id"]) is not None

    def test_admin_deletes(self, client, admin, repo, make_product) -> None:
        product = make_product()

        response = client.delete(f"/api/products/{product['_id']}", headers=admin[1])

        assert response.status_code == 200
        assert repo.find_by_id("product", product["_id"]) is None


class TestCategories:
    def test_list_sorted_by_name_with_counts(self, client, make_category, make_product) -> None:
        zed = make_category("zed")
        make_category("alpha")
        make_category("child", parent_id=str(zed["_id"]))
        make_product(categoryId=str(zed["_id"]))

        body = client.get("/api/categories").json()

        assert [c["slug"] for c in body] == ["alpha", "child", "zed"]
        assert body[2]["productCount"] == 1
        assert [c["slug"] for c in body[2]["children"]] == ["child"]

    def test_root_filter(self, client, make_category) -> None:
        root = make_category("root")
        make_category("leaf", parent_id=str(root["_id"]))

        body = client.get("/api/categories", params={"parentId": "null"}).json()

        assert [c["slug"] for c in body] == ["root"]

    def test_get_includes_parent(self, client, make_category) -> None:
        root = make_category("root")
        leaf = make_category("leaf", parent_id=str(root["_id"]))

        body = client.get(f"/api/categories/{leaf['_id']}").json()

        assert body["parent"]["slug"] == "root"

    def test_create_duplicate_slug_conflicts(self, client, admin, make_category) -> None:
        make_category("cards")

        response = client.post("/api/categories", json={"name": "Cards", "slug": "cards"}, headers=admin[1])

        assert response.status_code == 400
        assert response.json() == {"error": "Category with this slug already exists"}

    def test_create(self, client, admin) -> None:
        response = client.post("/api/categories", json={"name": "Cards", "slug": "cards"}, headers=admin[1])

        assert response.status_code == 201
        assert response.json()["slug"] == "cards"

    def test_create_requires_name_and_slug(self, client, admin) -> None:
        response = client.post("/api/categories", json={"name": "Cards"}, headers=admin[1])

        assert response.status_code == 400

    def test_rename_to_taken_slug_conflicts(self, client, admin, make_category) -> None:
        make_category("cards")
        books = make_category("books")

        response = client.put(f"/api/categories/{books['_id']}", json={"slug": "cards"}, headers=admin[1])

        assert response.status_code == 400

    def test_cannot_parent_itself(self, client, admin, make_category) -> None:
        cat = make_category("cards")

        response = client.put(
            f"/api/categories/{cat['_id']}", json={"parentId": str(cat["_id"])}, headers=admin[1]
        )

        assert response.status_code == 400

    def test_delete_blocked_by_children(self, client, admin, repo, make_category) -> None:
        parent = make_category("parent")
        make_category("child", parent_id=str(parent["_id"]))

        response = client.delete(f"/api/categories/{parent['_id']}", headers=admin[1])

        assert response.status_code == 400
        assert response.json() == {"error": "Cannot delete category with subcategories"}
        assert repo.count("category", {}) == 2

    def test_delete_blocked_by_products(self, client, admin, repo, make_category, make_product) -> None:
        cat = make_category("cards")
        make_product(categoryId=str(cat["_id"]))

        response = client.delete(f"/api/categories/{cat['_id']}", headers=admin[1])

        assert response.status_code == 400
        assert response.json() == {"error": "Cannot delete category with products"}
        assert repo.find_by_id("category", cat["_id"]) is not None
        assert repo.count("product", {}) == 1

    def test_delete_empty_category(self, client, admin, repo, make_category) -> None:
        cat = make_category("cards")

        assert client.delete(f"/api/categories/{cat['_id']}", headers=admin[1]).status_code == 200
        assert repo.find_by_id("category", cat["_id"]) is None

    def test_customer_cannot_delete(self, client, customer, repo, make_category) -> None:
        cat = make_category("cards")

        response = client.delete(f"/api/categories/{cat['_id']}", headers=customer[1])

        assert response.status_code == 403
        assert repo.find_by_id("category", cat["_id"]) is not None

    def test_update_ignores_null_required_fields(self, client, admin, repo, make_category) -> None:
        cat = make_category("cards")

        response = client.put(
            f"/api/categories/{cat['_id']}",
            json={"name": None, "slug": None, "description": "Gift cards"},
            headers=admin[1],
        )

        assert response.status_code == 200
        stored = repo.find_by_id("category", cat["_id"])
        assert stored["slug"] == "cards"
        assert stored["name"] == "Cards"
        assert stored["description"] == "Gift cards"

    def test_null_parent_moves_to_root(self, client, admin, repo, make_category) -> None:
        root = make_category("root")
        leaf = make_category("leaf", parent_id=str(root["_id"]))

        response = client.put(f"/api/categories/{leaf['_id']}", json={"parentId": None}, headers=admin[1])

        assert response.status_code == 200
        assert repo.find_by_id("category", leaf["_id"])["parentId"] is None

    def test_parent_id_is_stored_canonically(self, client, admin, repo, make_category) -> None:
        root = make_category("root")
        root_id = str(root["_id"])

        created = client.post(
            "/api/categories",
            json={"name": "Leaf", "slug": "leaf", "parentId": root_id.upper()},
            headers=admin[1],
        ).json()
        response = client.delete(f"/api/categories/{root_id}", headers=admin[1])

        assert created["parentId"] == root_id
        assert response.json() == {"error": "Cannot delete category with subcategories"}

    def test_cannot_parent_itself_by_uppercase_id(self, client, admin, make_category) -> None:
        cat = make_category("cards")

        response = client.put(
            f"/api/categories/{cat['_id']}", json={"parentId": str(cat["_id"]).upper()}, headers=admin[1]
        )

        assert response.status_code == 400
        assert response.json() == {"error": "A category cannot be its own parent"}

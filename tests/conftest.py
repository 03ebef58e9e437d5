"""Shared fixtures: an in-memory MongoDB and authenticated callers."""

from __future__ import annotations

from typing import Any, Callable, Dict, Tuple

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import Identity, create_access_token
from database import Repository, get_repository
from main import app
from schemas import Role

Caller = Tuple[Identity, Dict[str, str]]


@pytest.fixture
def repo() -> Repository:
    """Repository over a fresh mongomock database, with the real indexes."""
    repository = Repository(mongomock.MongoClient()["commerce_test"], use_transactions=False)
    repository.ensure_indexes()
    return repository


@pytest.fixture
def client(repo: Repository):
    app.dependency_overrides[get_repository] = lambda: repo
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(repo: Repository) -> Callable[..., Caller]:
    counter = {"n": 0}

    def _make(role: Role = Role.CUSTOMER, name: str = "Test User") -> Caller:
        counter["n"] += 1
        user = repo.insert(
            "user", {"name": name, "email": f"user{counter['n']}@example.com", "role": role.value}
        )
        user_id = str(user["_id"])
        token = create_access_token(user_id, role)
        return Identity(id=user_id, role=role), {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def admin(make_user) -> Caller:
    return make_user(Role.ADMIN, name="Admin")


@pytest.fixture
def customer(make_user) -> Caller:
    return make_user(Role.CUSTOMER, name="Alice")


@pytest.fixture
def other_customer(make_user) -> Caller:
    return make_user(Role.CUSTOMER, name="Bob")


@pytest.fixture
def make_category(repo: Repository) -> Callable[..., Dict[str, Any]]:
    def _make(slug: str = "cards", parent_id: str | None = None) -> Dict[str, Any]:
        return repo.insert("category", {"name": slug.title(), "slug": slug, "parentId": parent_id})

    return _make


@pytest.fixture
def make_product(repo: Repository, make_category) -> Callable[..., Dict[str, Any]]:
    default_category: Dict[str, Any] = {}

    def _make(name: str = "Glass Card", price: float = 10.0, **fields: Any) -> Dict[str, Any]:
        if "categoryId" not in fields:
            if not default_category:
                default_category.update(make_category("default"))
            fields["categoryId"] = str(default_category["_id"])
        doc = {
            "name": name,
            "description": f"{name} description",
            "price": price,
            "sku": name.upper().replace(" ", "-"),
            "stock": 5,
            "images": [],
            "featured": False,
            "isActive": True,
            "rating": 0.0,
            "reviewCount": 0,
            "variants": [],
        }
        doc.update(fields)
        return repo.insert("product", doc)

    return _make


@pytest.fixture
def shipping_address() -> Dict[str, Any]:
    return {
        "name": "Alice Example",
        "addressLine1": "1 Main St",
        "city": "Springfield",
        "state": "IL",
        "postalCode": "62701",
        "country": "US",
    }

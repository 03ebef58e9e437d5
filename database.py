"""
MongoDB access layer.

The process entry point owns the client (see the lifespan in main.py) and
hands a Repository to request handlers through the `get_repository`
dependency. Documents use the same camelCase keys as the API; `_id` is an
ObjectId and is exposed as a string `id` by `serialize`.
"""
import math
import os
import re
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Request
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import Conflict, Unexpected

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "commerce")
MONGO_TRANSACTIONS = os.getenv("MONGO_TRANSACTIONS", "false").lower() == "true"

logger = structlog.get_logger(__name__)

Sort = List[Tuple[str, int]]
NEWEST_FIRST: Sort = [("createdAt", DESCENDING), ("_id", DESCENDING)]
BY_NAME: Sort = [("name", ASCENDING)]

PRODUCT_SUMMARY = ("name", "images", "price")
USER_SUMMARY = ("name", "image")


def now() -> datetime:
    return datetime.now(timezone.utc)


def object_id(value: Any) -> Optional[ObjectId]:
    """Parse an id; anything that is not a valid ObjectId resolves to None."""
    if isinstance(value, ObjectId):
        return value
    if not value:
        # ObjectId(None) would mint a fresh id
        return None
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def contains(query: str) -> Dict[str, str]:
    """Case-insensitive substring match."""
    return {"$regex": re.escape(query), "$options": "i"}


@dataclass
class Page:
    items: List[Dict[str, Any]]
    total_count: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.limit)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "items": self.items,
            "totalCount": self.total_count,
            "page": self.page,
            "limit": self.limit,
            "totalPages": self.total_pages,
        }


class UnitOfWork:
    """Writes that must land together.

    Inside a server-side transaction `session` is set and the server discards
    everything on abort. Without one, each insert registers a compensating
    delete which `rollback` replays in reverse order.
    """

    def __init__(self, session=None):
        self.session = session
        self._undo: List[Callable[[], Any]] = []

    def on_rollback(self, fn: Callable[[], Any]) -> None:
        if self.session is None:
            self._undo.append(fn)

    def rollback(self) -> None:
        while self._undo:
            fn = self._undo.pop()
            try:
                fn()
            except PyMongoError:
                logger.exception("rollback_step_failed")


class Repository:
    def __init__(self, db, client: Optional[MongoClient] = None, use_transactions: bool = MONGO_TRANSACTIONS):
        self.db = db
        self.client = client
        self.use_transactions = use_transactions and client is not None

    @classmethod
    def connect(cls, url: str = DATABASE_URL, name: str = DATABASE_NAME) -> "Repository":
        client = MongoClient(url)
        return cls(client[name], client=client)

    def close(self) -> None:
        if self.client is not None:
            self.client.close()

    def ensure_indexes(self) -> None:
        self.db["category"].create_index("slug", unique=True)
        self.db["user"].create_index("email", unique=True)
        self.db["review"].create_index([("userId", ASCENDING), ("productId", ASCENDING)], unique=True)
        self.db["product"].create_index("categoryId")
        self.db["order"].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])

    @contextmanager
    def transaction(self):
        if self.use_transactions:
            with self.client.start_session() as session:
                with session.start_transaction():
                    yield UnitOfWork(session)
            return
        unit = UnitOfWork()
        try:
            yield unit
        except Exception:
            unit.rollback()
            raise

    # ---------- Generic CRUD ----------
    def find_by_id(self, collection: str, id: Any) -> Optional[Dict[str, Any]]:
        oid = object_id(id)
        if oid is None:
            return None
        return self.db[collection].find_one({"_id": oid})

    def find_by_ids(self, collection: str, ids: Iterable[Any]) -> Dict[str, Dict[str, Any]]:
        oids = [oid for oid in (object_id(i) for i in set(ids)) if oid is not None]
        if not oids:
            return {}
        return {str(doc["_id"]): doc for doc in self.db[collection].find({"_id": {"$in": oids}})}

    def find_one(self, collection: str, filt: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self.db[collection].find_one(filt)

    def find_many(
        self,
        collection: str,
        filt: Dict[str, Any],
        sort: Optional[Sort] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> List[Dict[str, Any]]:
        cursor = self.db[collection].find(filt)
        if sort:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def count(self, collection: str, filt: Dict[str, Any]) -> int:
        return self.db[collection].count_documents(filt)

    def paginate(self, collection: str, filt: Dict[str, Any], page: int, limit: int, sort: Sort) -> Page:
        total = self.count(collection, filt)
        docs = self.find_many(collection, filt, sort=sort, skip=(page - 1) * limit, limit=limit)
        return Page(items=docs, total_count=total, page=page, limit=limit)

    def insert(self, collection: str, doc: Dict[str, Any], unit: Optional[UnitOfWork] = None) -> Dict[str, Any]:
        doc = dict(doc)
        doc.setdefault("createdAt", now())
        session = unit.session if unit else None
        try:
            inserted_id = self.db[collection].insert_one(doc, session=session).inserted_id
        except DuplicateKeyError as exc:
            raise Conflict(f"Duplicate {collection}") from exc
        doc["_id"] = inserted_id
        if unit is not None:
            unit.on_rollback(lambda: self.db[collection].delete_one({"_id": inserted_id}))
        return doc

    def update(
        self, collection: str, id: Any, fields: Dict[str, Any], unit: Optional[UnitOfWork] = None
    ) -> Optional[Dict[str, Any]]:
        oid = object_id(id)
        if oid is None:
            return None
        changes = dict(fields, updatedAt=now())
        try:
            return self.db[collection].find_one_and_update(
                {"_id": oid},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
                session=unit.session if unit else None,
            )
        except DuplicateKeyError as exc:
            raise Conflict(f"Duplicate {collection}") from exc

    def delete(self, collection: str, id: Any, unit: Optional[UnitOfWork] = None) -> bool:
        oid = object_id(id)
        if oid is None:
            return False
        session = unit.session if unit else None
        return self.db[collection].delete_one({"_id": oid}, session=session).deleted_count == 1

    # ---------- Uniqueness and dependents ----------
    def slug_taken(self, slug: str, exclude_id: Optional[Any] = None) -> bool:
        filt: Dict[str, Any] = {"slug": slug}
        if exclude_id is not None:
            filt["_id"] = {"$ne": object_id(exclude_id)}
        return self.count("category", filt) > 0

    def email_taken(self, email: str) -> bool:
        return self.count("user", {"email": email}) > 0

    def review_exists(self, user_id: str, product_id: str) -> bool:
        return self.count("review", {"userId": user_id, "productId": product_id}) > 0

    def category_dependents(self, category_id: str) -> Tuple[int, int]:
        """(child category count, product count) for a category."""
        return (
            self.count("category", {"parentId": category_id}),
            self.count("product", {"categoryId": category_id}),
        )

    # ---------- Products ----------
    def update_product(
        self, product_id: Any, fields: Dict[str, Any], variants: Optional[Sequence[Dict[str, Any]]] = None
    ) -> Optional[Dict[str, Any]]:
        """Update product fields and, when given, swap the whole variant set.

        Both land in a single document write, so readers see either the old
        variant list or the new one, never a mix.
        """
        changes = dict(fields)
        if variants is not None:
            changes["variants"] = build_variants(variants)
        return self.update("product", product_id, changes)

    # ---------- Reviews ----------
    def review_ratings(self, product_id: str) -> List[int]:
        return [r["rating"] for r in self.db["review"].find({"productId": product_id}, {"rating": 1})]

    # ---------- Relationship loads ----------
    def summaries(self, collection: str, ids: Iterable[Any], fields: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        found = self.find_by_ids(collection, ids)
        return {key: dict({"id": key}, **{f: doc.get(f) for f in fields}) for key, doc in found.items()}

    def with_order_relations(self, order: Dict[str, Any], include_user: bool = False) -> Dict[str, Any]:
        out = serialize(order)
        products = self.find_by_ids("product", (i["productId"] for i in order.get("items", [])))
        items = []
        for item in order.get("items", []):
            product = products.get(item["productId"])
            entry = dict(item, product=_summary(product, PRODUCT_SUMMARY))
            if item.get("variantId") and product:
                entry["variant"] = next(
                    (v for v in product.get("variants", []) if v.get("id") == item["variantId"]), None
                )
            items.append(entry)
        out["items"] = items
        out["shippingAddress"] = serialize(self.find_by_id("address", order.get("shippingAddressId")))
        if include_user:
            out["user"] = _summary(self.find_by_id("user", order.get("userId")), ("name", "email"))
        return out

    def with_review_relations(self, reviews: List[Dict[str, Any]], include_product: bool = True) -> List[Dict[str, Any]]:
        users = self.summaries("user", (r["userId"] for r in reviews), USER_SUMMARY)
        products = (
            self.summaries("product", (r["productId"] for r in reviews), ("name", "images"))
            if include_product
            else {}
        )
        out = []
        for review in reviews:
            entry = serialize(review)
            entry["user"] = users.get(review["userId"])
            if include_product:
                entry["product"] = products.get(review["productId"])
            out.append(entry)
        return out

    def with_category_relations(self, category: Dict[str, Any], include_parent: bool = False) -> Dict[str, Any]:
        key = str(category["_id"])
        out = serialize(category)
        out["children"] = [serialize(c) for c in self.find_many("category", {"parentId": key}, sort=BY_NAME)]
        out["productCount"] = self.count("product", {"categoryId": key})
        if include_parent:
            out["parent"] = serialize(self.find_by_id("category", category.get("parentId")))
        return out


def build_variants(variants: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [dict(v, id=str(ObjectId())) for v in variants]


def _summary(doc: Optional[Dict[str, Any]], fields: Sequence[str]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    return dict({"id": str(doc["_id"])}, **{f: doc.get(f) for f in fields})


def get_repository(request: Request) -> Repository:
    repo = getattr(request.app.state, "repository", None)
    if repo is None:
        raise Unexpected("Database not configured")
    return repo

import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Tuple

import structlog
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auth import Identity, get_password_hash, resolve_identity
from database import (
    BY_NAME,
    NEWEST_FIRST,
    Page,
    Repository,
    build_variants,
    contains,
    get_repository,
    serialize,
)
from errors import CommerceError, Conflict, InvalidInput, NotFound
from logging_config import configure_logging
from orders import place_order
from policy import Action, authorize, require_identity
from ratings import recompute_product_rating
from schemas import (
    Category,
    CategoryCreate,
    CategoryUpdate,
    OrderCreate,
    OrderStatus,
    OrderUpdate,
    Product,
    ProductCreate,
    ProductUpdate,
    ProfileUpdate,
    Review,
    ReviewCreate,
    ReviewUpdate,
    Role,
    User,
    UserCreate,
    UserUpdate,
)

DEFAULT_PAGE_LIMIT = int(os.getenv("DEFAULT_PAGE_LIMIT", 10))
MAX_PAGE_LIMIT = int(os.getenv("MAX_PAGE_LIMIT", 100))

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    repo = Repository.connect()
    repo.ensure_indexes()
    app.state.repository = repo
    logger.info("database_connected", transactions=repo.use_transactions)
    yield
    repo.close()


app = FastAPI(title="Commerce API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Errors ----------
@app.exception_handler(CommerceError)
async def commerce_error_handler(request: Request, exc: CommerceError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=repr(exc.__cause__ or exc))
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    message = f"{field}: {first['msg']}" if field else first["msg"]
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ---------- Helpers ----------
def pagination(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
) -> Tuple[int, int]:
    return page, limit


def public_user(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    out = serialize(doc)
    if out is not None:
        out.pop("hashedPassword", None)
    return out


def load(repo: Repository, collection: str, id: str, label: str) -> Dict[str, Any]:
    doc = repo.find_by_id(collection, id)
    if doc is None:
        raise NotFound(f"{label} not found")
    return doc


@app.get("/")
def read_root():
    return {"message": "Commerce backend is running"}


# ---------- Products ----------
@app.get("/api/products")
def list_products(
    category: Optional[str] = None,
    featured: bool = False,
    q: Optional[str] = None,
    paging: Tuple[int, int] = Depends(pagination),
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.READ_PUBLIC_CATALOG)
    page, limit = paging
    filt: Dict[str, Any] = {"isActive": True}
    if category:
        cat = repo.find_one("category", {"slug": category})
        if cat is None:
            return Page(items=[], total_count=0, page=page, limit=limit).as_dict()
        filt["categoryId"] = str(cat["_id"])
    if featured:
        filt["featured"] = True
    if q:
        filt["$or"] = [{"name": contains(q)}, {"description": contains(q)}, {"sku": contains(q)}]

    result = repo.paginate("product", filt, page, limit, NEWEST_FIRST)
    categories = repo.find_by_ids("category", (p.get("categoryId") for p in result.items))
    result.items = [
        dict(serialize(p), category=serialize(categories.get(p.get("categoryId")))) for p in result.items
    ]
    return result.as_dict()


@app.get("/api/products/{product_id}")
def get_product(
    product_id: str,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.READ_PUBLIC_CATALOG)
    product = load(repo, "product", product_id, "Product")
    reviews = repo.find_many("review", {"productId": str(product["_id"])}, sort=NEWEST_FIRST)
    out = serialize(product)
    out["category"] = serialize(repo.find_by_id("category", product.get("categoryId")))
    out["reviews"] = repo.with_review_relations(reviews, include_product=False)
    return out


@app.post("/api/products", status_code=201)
def create_product(
    payload: ProductCreate,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.ADMIN_ONLY)
    category = load(repo, "category", payload.category_id, "Category")
    doc = Product.model_validate(payload.model_dump()).to_document()
    doc["categoryId"] = str(category["_id"])
    doc["variants"] = build_variants(doc["variants"])
    return serialize(repo.insert("product", doc))


@app.put("/api/products/{product_id}")
def update_product(
    product_id: str,
    payload: ProductUpdate,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.ADMIN_ONLY)
    load(repo, "product", product_id, "Product")
    fields = payload.to_document(exclude_unset=True, exclude={"variants"})
    variants = [v.to_document() for v in payload.variants] if payload.variants is not None else None
    # comparePrice is the only field that may be cleared with an explicit null
    fields = {k: v for k, v in fields.items() if v is not None or k == "comparePrice"}
    if fields.get("categoryId") is not None:
        fields["categoryId"] = str(load(repo, "category", fields["categoryId"], "Category")["_id"])
    return serialize(repo.update_product(product_id, fields, variants=variants))


@app.delete("/api/products/{product_id}")
def delete_product(
    product_id: str,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.ADMIN_ONLY)
    load(repo, "product", product_id, "Product")
    repo.delete("product", product_id)
    logger.info("product_deleted", product_id=product_id, by=identity.id)
    return {"message": "Product deleted successfully"}


# ---------- Categories ----------
@app.get("/api/categories")
def list_categories(
    parent_id: Optional[str] = Query(None, alias="parentId"),
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.READ_PUBLIC_CATALOG)
    filt: Dict[str, Any] = {}
    if parent_id == "null":
        filt["parentId"] = None
    elif parent_id:
        filt["parentId"] = parent_id
    return [repo.with_category_relations(c) for c in repo.find_many("category", filt, sort=BY_NAME)]


@app.get("/api/categories/{category_id}")
def get_category(
    category_id: str,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.READ_PUBLIC_CATALOG)
    category = load(repo, "category", category_id, "Category")
    return repo.with_category_relations(category, include_parent=True)


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryCreate,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.ADMIN_ONLY)
    if repo.slug_taken(payload.slug):
        raise Conflict("Category with this slug already exists")
    doc = Category.model_validate(payload.model_dump()).to_document()
    if payload.parent_id:
        doc["parentId"] = str(load(repo, "category", payload.parent_id, "Parent category")["_id"])
    return serialize(repo.insert("category", doc))


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: str,
    payload: CategoryUpdate,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.ADMIN_ONLY)
    existing = load(repo, "category", category_id, "Category")
    # parentId is the only field that may be cleared with an explicit null (back to a root)
    fields = {
        k: v for k, v in payload.to_document(exclude_unset=True).items() if v is not None or k == "parentId"
    }
    if fields.get("slug") and fields["slug"] != existing.get("slug"):
        if repo.slug_taken(fields["slug"], exclude_id=existing["_id"]):
            raise Conflict("Category with this slug already exists")
    if fields.get("parentId"):
        parent = load(repo, "category", fields["parentId"], "Parent category")
        if parent["_id"] == existing["_id"]:
            raise InvalidInput("A category cannot be its own parent")
        fields["parentId"] = str(parent["_id"])
    return serialize(repo.update("category", category_id, fields))


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: str,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.ADMIN_ONLY)
    category = load(repo, "category", category_id, "Category")
    children, products = repo.category_dependents(str(category["_id"]))
    if children:
        raise Conflict("Cannot delete category with subcategories")
    if products:
        raise Conflict("Cannot delete category with products")
    repo.delete("category", category_id)
    logger.info("category_deleted", category_id=category_id, by=identity.id)
    return {"message": "Category deleted successfully"}


# ---------- Orders ----------
@app.get("/api/orders")
def list_orders(
    status: Optional[OrderStatus] = None,
    user_id: Optional[str] = Query(None, alias="userId"),
    paging: Tuple[int, int] = Depends(pagination),
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    caller = require_identity(identity)
    page, limit = paging
    filt: Dict[str, Any] = {}
    if status:
        filt["status"] = status.value
    # customers only ever see their own orders, whatever userId they ask for
    if caller.is_admin:
        if user_id:
            filt["userId"] = user_id
    else:
        filt["userId"] = caller.id
    authorize(caller, Action.READ_OWN_OR_SELF, owner_id=filt.get("userId"))

    result = repo.paginate("order", filt, page, limit, NEWEST_FIRST)
    body = result.as_dict()
    return {
        "items": [repo.with_order_relations(o, include_user=True) for o in result.items],
        "meta": {k: body[k] for k in ("totalCount", "page", "limit", "totalPages")},
    }


@app.post("/api/orders")
def create_order(
    payload: OrderCreate,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.WRITE_OWN_OR_SELF, owner_id=identity.id if identity else None)
    order = place_order(
        repo,
        identity,
        payload.items,
        payload.shipping_address,
        payment_intent_id=payload.payment_intent_id,
    )
    return repo.with_order_relations(order)


@app.get("/api/orders/{order_id}")
def get_order(
    order_id: str,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    caller = require_identity(identity)
    order = load(repo, "order", order_id, "Order")
    authorize(caller, Action.READ_OWN_OR_SELF, owner_id=order.get("userId"))
    return repo.with_order_relations(order, include_user=True)


@app.put("/api/orders/{order_id}")
def update_order(
    order_id: str,
    payload: OrderUpdate,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.ADMIN_ONLY)
    load(repo, "order", order_id, "Order")
    # total and items are fixed at placement; only fulfilment fields change
    fields = {k: v for k, v in payload.to_document(exclude_unset=True).items() if v is not None}
    order = repo.update("order", order_id, fields)
    if order is None:
        raise NotFound("Order not found")
    return repo.with_order_relations(order)


@app.delete("/api/orders/{order_id}")
def delete_order(
    order_id: str,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.ADMIN_ONLY)
    load(repo, "order", order_id, "Order")
    # items are embedded, so they go with the order document
    repo.delete("order", order_id)
    logger.info("order_deleted", order_id=order_id, by=identity.id)
    return {"message": "Order deleted successfully"}


# ---------- Reviews ----------
@app.get("/api/reviews")
def list_reviews(
    product_id: Optional[str] = Query(None, alias="productId"),
    user_id: Optional[str] = Query(None, alias="userId"),
    rating: Optional[int] = Query(None, ge=1, le=5),
    paging: Tuple[int, int] = Depends(pagination),
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.READ_PUBLIC_CATALOG)
    page, limit = paging
    filt: Dict[str, Any] = {}
    if product_id:
        filt["productId"] = product_id
    if user_id:
        filt["userId"] = user_id
    if rating:
        filt["rating"] = rating
    result = repo.paginate("review", filt, page, limit, NEWEST_FIRST)
    result.items = repo.with_review_relations(result.items)
    return result.as_dict()


@app.get("/api/reviews/{review_id}")
def get_review(
    review_id: str,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.READ_PUBLIC_CATALOG)
    review = load(repo, "review", review_id, "Review")
    return repo.with_review_relations([review])[0]


@app.post("/api/reviews", status_code=201)
def create_review(
    payload: ReviewCreate,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.WRITE_OWN_OR_SELF, owner_id=identity.id if identity else None)
    product_id = str(load(repo, "product", payload.product_id, "Product")["_id"])
    if repo.review_exists(identity.id, product_id):
        raise Conflict("You have already reviewed this product")

    doc = Review(
        user_id=identity.id,
        product_id=product_id,
        rating=payload.rating,
        title=payload.title or "",
        comment=payload.comment or "",
    ).to_document()
    try:
        review = repo.insert("review", doc)
    except Conflict as exc:
        raise Conflict("You have already reviewed this product") from exc
    recompute_product_rating(repo, product_id)
    return repo.with_review_relations([review], include_product=False)[0]


@app.put("/api/reviews/{review_id}")
def update_review(
    review_id: str,
    payload: ReviewUpdate,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    caller = require_identity(identity)
    review = load(repo, "review", review_id, "Review")
    authorize(caller, Action.WRITE_OWN_OR_SELF, owner_id=review["userId"])
    fields = {k: v for k, v in payload.to_document(exclude_unset=True).items() if v is not None}
    updated = repo.update("review", review_id, fields)
    recompute_product_rating(repo, review["productId"])
    if updated is None:
        raise NotFound("Review not found")
    return repo.with_review_relations([updated])[0]


@app.delete("/api/reviews/{review_id}")
def delete_review(
    review_id: str,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    caller = require_identity(identity)
    review = load(repo, "review", review_id, "Review")
    authorize(caller, Action.WRITE_OWN_OR_SELF, owner_id=review["userId"])
    repo.delete("review", review_id)
    recompute_product_rating(repo, review["productId"])
    return {"message": "Review deleted successfully"}


# ---------- Users ----------
@app.get("/api/users")
def list_users(
    role: Optional[Role] = None,
    q: Optional[str] = None,
    paging: Tuple[int, int] = Depends(pagination),
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.ADMIN_ONLY)
    page, limit = paging
    filt: Dict[str, Any] = {}
    if role:
        filt["role"] = role.value
    if q:
        filt["$or"] = [{"name": contains(q)}, {"email": contains(q)}]
    result = repo.paginate("user", filt, page, limit, NEWEST_FIRST)
    result.items = [
        dict(public_user(u), orderCount=repo.count("order", {"userId": str(u["_id"])})) for u in result.items
    ]
    return result.as_dict()


@app.post("/api/users", status_code=201)
def create_user(
    payload: UserCreate,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.ADMIN_ONLY)
    if repo.email_taken(payload.email):
        raise Conflict("User with this email already exists")
    user = User(
        name=payload.name,
        email=payload.email,
        role=payload.role,
        image=payload.image,
        hashed_password=get_password_hash(payload.password) if payload.password else None,
    )
    return public_user(repo.insert("user", user.to_document()))


@app.get("/api/users/profile")
def get_profile(
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    caller = require_identity(identity)
    authorize(caller, Action.READ_OWN_OR_SELF, owner_id=caller.id)
    user = public_user(load(repo, "user", caller.id, "User"))
    user["addresses"] = [serialize(a) for a in repo.find_many("address", {"userId": caller.id})]
    return user


@app.put("/api/users/profile")
def update_profile(
    payload: ProfileUpdate,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.WRITE_OWN_OR_SELF, owner_id=identity.id if identity else None)
    fields = {k: v for k, v in payload.to_document().items() if v}
    if not fields:
        raise InvalidInput("At least one field to update must be provided")
    return public_user(repo.update("user", identity.id, fields))


@app.get("/api/users/{user_id}")
def get_user(
    user_id: str,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    caller = require_identity(identity)
    authorize(caller, Action.READ_OWN_OR_SELF, owner_id=user_id)
    user = public_user(load(repo, "user", user_id, "User"))
    recent = repo.find_many("order", {"userId": user_id}, sort=NEWEST_FIRST, limit=5)
    user["addresses"] = [serialize(a) for a in repo.find_many("address", {"userId": user_id})]
    user["orders"] = [repo.with_order_relations(o) for o in recent]
    user["orderCount"] = repo.count("order", {"userId": user_id})
    user["reviewCount"] = repo.count("review", {"userId": user_id})
    return user


@app.put("/api/users/{user_id}")
def update_user(
    user_id: str,
    payload: UserUpdate,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    caller = require_identity(identity)
    authorize(caller, Action.WRITE_OWN_OR_SELF, owner_id=user_id)
    load(repo, "user", user_id, "User")
    fields: Dict[str, Any] = {}
    if payload.name is not None:
        fields["name"] = payload.name
    if payload.image is not None:
        fields["image"] = payload.image
    # role changes are an admin privilege; a customer's role field is ignored
    if caller.is_admin and payload.role is not None:
        fields["role"] = payload.role
    if payload.password:
        fields["hashedPassword"] = get_password_hash(payload.password)
    return public_user(repo.update("user", user_id, fields))


@app.delete("/api/users/{user_id}")
def delete_user(
    user_id: str,
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.ADMIN_ONLY)
    load(repo, "user", user_id, "User")
    repo.delete("user", user_id)
    logger.info("user_deleted", user_id=user_id, by=identity.id)
    return {"message": "User deleted successfully"}


# ---------- Search ----------
@app.get("/api/search")
def search(
    q: str = Query(..., min_length=1),
    type: Optional[str] = Query(None, pattern="^(products|categories|orders)$"),
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    identity: Optional[Identity] = Depends(resolve_identity),
    repo: Repository = Depends(get_repository),
):
    authorize(identity, Action.READ_PUBLIC_CATALOG)
    results: Dict[str, Any] = {}

    if not type or type == "products":
        filt = {
            "isActive": True,
            "$or": [{"name": contains(q)}, {"description": contains(q)}, {"sku": contains(q)}],
        }
        results["products"] = [serialize(p) for p in repo.find_many("product", filt, limit=limit)]

    if not type or type == "categories":
        filt = {"$or": [{"name": contains(q)}, {"description": contains(q)}, {"slug": contains(q)}]}
        results["categories"] = [
            dict(serialize(c), productCount=repo.count("product", {"categoryId": str(c["_id"])}))
            for c in repo.find_many("category", filt, limit=limit)
        ]

    # orders are private: only searched for a logged-in caller, and customers only see their own
    if (not type or type == "orders") and identity is not None:
        matches = [{"trackingNumber": contains(q)}, {"trackingCompany": contains(q)}]
        users = repo.find_many("user", {"$or": [{"name": contains(q)}, {"email": contains(q)}]})
        if users:
            matches.append({"userId": {"$in": [str(u["_id"]) for u in users]}})
        by_id = repo.find_by_id("order", q)
        if by_id is not None:
            matches.append({"_id": by_id["_id"]})
        filt = {"$or": matches}
        if not identity.is_admin:
            filt["userId"] = identity.id
        authorize(identity, Action.READ_OWN_OR_SELF, owner_id=filt.get("userId"))
        results["orders"] = [
            repo.with_order_relations(o, include_user=True) for o in repo.find_many("order", filt, limit=limit)
        ]

    return results


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

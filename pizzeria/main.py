from fastapi import FastAPI, Depends, HTTPException, status, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError
from datetime import datetime, timedelta
from typing import Optional, List, Dict

from shared.utils import (
    get_db_client, settings, SuccessResponse, ErrorResponse, HealthResponse,
    NotFoundException, UnauthorizedException, ForbiddenException, ConflictException,
    InvalidStateException,
    get_password_hash, verify_password, create_access_token, create_refresh_token,
    verify_refresh_token, require_admin
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from pizzeria.cart import CartService
from pizzeria.catalog import Catalog, LOW_STOCK_THRESHOLD
from pizzeria.checkout import CheckoutService
from pizzeria.coupons import CouponLedger, normalize_code
from pizzeria.documents import ensure_indexes, str_to_oid, with_id
from pizzeria.identity import (
    IdentityContext, get_identity, get_user_identity, get_optional_identity
)
from pizzeria.models import UserDB, ProductDB, CustomizationDB, OrderStatus, OrderType
from pizzeria.notifier import EventPublisher, Notifier
from pizzeria.order_status import OrderStatusMachine, CANCELLED
from pizzeria.recommendations import PreferenceTracker, RecommendationService
from pizzeria.schemas import (
    UserRegister, UserLogin, Token, RefreshTokenRequest, UserResponse, UserListResponse,
    ProfileUpdate, PasswordChange,
    ProductCreate, ProductUpdate, InventoryUpdate, ProductResponse, ProductListResponse,
    LowStockResponse,
    CustomizationCreate, CustomizationUpdate, CustomizationResponse,
    CartItemAdd, CartItemUpdate, CartMerge, CartResponse,
    CouponCreate, CouponUpdate, CouponValidateRequest, CouponValidateResponse,
    CouponResponse, CouponListResponse,
    OrderCreate, OrderStatusUpdate, OrderResponse, OrderListResponse, OrderTrackResponse,
    RecommendationResponse, SimilarItemsRequest, DietaryPreferencesUpdate, PreferencesResponse,
    ReorderSuggestion
)

SERVICE_NAME = "pizzeria-service"

# Setup Logging
logger = setup_logging(SERVICE_NAME)

app = FastAPI(title="Pizzeria Service")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware, service_name=SERVICE_NAME)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Live order events; subscribers register against app.publisher
app.publisher = EventPublisher()
app.notifier = Notifier(app.publisher)

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.MONGO_DB_NAME]
    await ensure_indexes(app.mongodb)

@app.on_event("shutdown")
async def shutdown_db_client():
    await app.notifier.drain()
    app.mongodb_client.close()

@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.warning("Duplicate key rejected", extra={"path": request.url.path})
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=ErrorResponse(error="Resource already exists").dict(),
    )

# --- Services ---
def get_catalog() -> Catalog:
    return Catalog(app.mongodb)

def get_cart_service() -> CartService:
    return CartService(app.mongodb)

def get_coupon_ledger() -> CouponLedger:
    return CouponLedger(app.mongodb)

def get_status_machine() -> OrderStatusMachine:
    return OrderStatusMachine(app.mongodb, notifier=app.notifier)

def get_checkout_service() -> CheckoutService:
    return CheckoutService(
        app.mongodb,
        notifier=app.notifier,
        preferences=PreferenceTracker(app.mongodb),
    )

def get_recommendation_service() -> RecommendationService:
    return RecommendationService(app.mongodb)

# --- Helpers ---
def product_response(doc: dict) -> ProductResponse:
    return ProductResponse(**with_id(doc))

def order_response(doc: dict) -> OrderResponse:
    return OrderResponse(**with_id(doc))

def coupon_response(doc: dict) -> CouponResponse:
    return CouponResponse(**with_id(doc))

def issue_tokens(user_id: str, role: str) -> Token:
    claims = {"sub": user_id, "role": role}
    return Token(
        access_token=create_access_token(
            data=claims, expires_delta=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        ),
        refresh_token=create_refresh_token(data=claims),
        token_type="bearer",
    )

# --- Endpoints ---

# Auth
@app.post("/auth/register", response_model=SuccessResponse[UserResponse])
async def register(user: UserRegister):
    existing_user = await app.mongodb.users.find_one({"email": user.email})
    if existing_user:
        raise ConflictException("Email already registered")

    user_db = UserDB(
        name=user.name,
        email=user.email,
        phone=user.phone,
        password_hash=get_password_hash(user.password),
    )
    new_user = await app.mongodb.users.insert_one(user_db.dict(by_alias=True, exclude={"id"}))
    created_user = await app.mongodb.users.find_one({"_id": new_user.inserted_id})
    logger.info("User registered", extra={"user_id": str(new_user.inserted_id)})
    return SuccessResponse(data=UserResponse(**with_id(created_user)), message="User registered successfully")

@app.post("/auth/login", response_model=SuccessResponse[Token])
@limiter.limit("5/minute")
async def login(user_credentials: UserLogin, request: Request):
    user = await app.mongodb.users.find_one({"email": user_credentials.email})
    if not user or not verify_password(user_credentials.password, user["password_hash"]):
        raise UnauthorizedException("Incorrect email or password")
    if not user.get("is_active", True):
        raise ForbiddenException("Account is disabled")
    return SuccessResponse(data=issue_tokens(str(user["_id"]), user["role"]))

@app.post("/auth/refresh", response_model=SuccessResponse[Token])
async def refresh_token(body: RefreshTokenRequest):
    payload = verify_refresh_token(body.refresh_token)
    user = await app.mongodb.users.find_one({"_id": str_to_oid(payload["sub"], "User")})
    if not user or not user.get("is_active", True):
        raise UnauthorizedException("Invalid refresh token")
    return SuccessResponse(data=issue_tokens(str(user["_id"]), user["role"]))

@app.get("/auth/me", response_model=SuccessResponse[UserResponse])
async def me(identity: IdentityContext = Depends(get_user_identity)):
    user = await app.mongodb.users.find_one({"_id": str_to_oid(identity.user_id, "User")})
    if not user:
        raise NotFoundException("User not found")
    return SuccessResponse(data=UserResponse(**with_id(user)))

@app.put("/auth/profile", response_model=SuccessResponse[UserResponse])
async def update_profile(body: ProfileUpdate, identity: IdentityContext = Depends(get_user_identity)):
    user_oid = str_to_oid(identity.user_id, "User")
    update_data = {k: v for k, v in body.dict().items() if v is not None}
    if update_data:
        await app.mongodb.users.update_one({"_id": user_oid}, {"$set": update_data})
    user = await app.mongodb.users.find_one({"_id": user_oid})
    if not user:
        raise NotFoundException("User not found")
    return SuccessResponse(data=UserResponse(**with_id(user)), message="Profile updated")

@app.put("/auth/password", response_model=SuccessResponse[dict])
async def change_password(body: PasswordChange, identity: IdentityContext = Depends(get_user_identity)):
    user = await app.mongodb.users.find_one({"_id": str_to_oid(identity.user_id, "User")})
    if not user:
        raise NotFoundException("User not found")
    if not verify_password(body.current_password, user["password_hash"]):
        raise InvalidStateException("Current password is incorrect")
    await app.mongodb.users.update_one(
        {"_id": user["_id"]}, {"$set": {"password_hash": get_password_hash(body.new_password)}}
    )
    logger.info("Password changed", extra={"user_id": identity.user_id})
    return SuccessResponse(data={}, message="Password changed successfully")

@app.get("/auth/users", response_model=SuccessResponse[UserListResponse])
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: dict = Depends(require_admin)
):
    skip = (page - 1) * limit
    total = await app.mongodb.users.count_documents({})
    cursor = app.mongodb.users.find().sort("created_at", DESCENDING).skip(skip).limit(limit)
    users = [UserResponse(**with_id(doc)) for doc in await cursor.to_list(length=limit)]
    return SuccessResponse(data=UserListResponse(users=users, total=total, page=page, limit=limit))

# Products
@app.get("/products", response_model=SuccessResponse[ProductListResponse])
async def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category: Optional[str] = None,
    is_vegetarian: Optional[bool] = None,
    is_spicy: Optional[bool] = None,
    search: Optional[str] = None
):
    query = {"is_available": True}
    if category:
        query["category"] = category
    if is_vegetarian is not None:
        query["is_vegetarian"] = is_vegetarian
    if is_spicy is not None:
        query["is_spicy"] = is_spicy
    if search:
        query["name"] = {"$regex": search, "$options": "i"}

    skip = (page - 1) * limit
    total = await app.mongodb.products.count_documents(query)
    cursor = app.mongodb.products.find(query).sort("order_count", DESCENDING).skip(skip).limit(limit)
    products = [product_response(doc) for doc in await cursor.to_list(length=limit)]

    return SuccessResponse(data=ProductListResponse(
        products=products,
        total=total,
        page=page,
        limit=limit
    ))

@app.get("/products/menu", response_model=SuccessResponse[Dict[str, List[ProductResponse]]])
async def get_menu(catalog: Catalog = Depends(get_catalog)):
    menu = await catalog.menu()
    return SuccessResponse(data={
        category: [product_response(doc) for doc in products]
        for category, products in menu.items()
    })

@app.get("/products/admin/all", response_model=SuccessResponse[ProductListResponse])
async def list_all_products(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    admin: dict = Depends(require_admin)
):
    # Includes switched-off products
    skip = (page - 1) * limit
    total = await app.mongodb.products.count_documents({})
    cursor = app.mongodb.products.find().sort("created_at", DESCENDING).skip(skip).limit(limit)
    products = [product_response(doc) for doc in await cursor.to_list(length=limit)]
    return SuccessResponse(data=ProductListResponse(products=products, total=total, page=page, limit=limit))

@app.get("/products/admin/low-stock", response_model=SuccessResponse[LowStockResponse])
async def low_stock_products(
    threshold: int = Query(LOW_STOCK_THRESHOLD, ge=0),
    admin: dict = Depends(require_admin),
    catalog: Catalog = Depends(get_catalog)
):
    products = await catalog.low_stock(threshold)
    return SuccessResponse(data=LowStockResponse(
        products=[product_response(doc) for doc in products],
        count=len(products),
        threshold=threshold
    ))

@app.get("/products/{product_id}", response_model=SuccessResponse[ProductResponse])
async def get_product(product_id: str, catalog: Catalog = Depends(get_catalog)):
    product = await catalog.get_product(product_id)
    return SuccessResponse(data=product_response(product))

@app.post("/products", response_model=SuccessResponse[ProductResponse])
async def create_product(product: ProductCreate, admin: dict = Depends(require_admin)):
    product_db = ProductDB(**product.dict())
    new_product = await app.mongodb.products.insert_one(product_db.dict(by_alias=True, exclude={"id"}))
    created_product = await app.mongodb.products.find_one({"_id": new_product.inserted_id})
    logger.info("Product created", extra={"product_id": str(new_product.inserted_id)})
    return SuccessResponse(data=product_response(created_product), message="Product created successfully")

@app.put("/products/{product_id}", response_model=SuccessResponse[ProductResponse])
async def update_product(
    product_id: str,
    product_update: ProductUpdate,
    admin: dict = Depends(require_admin),
    catalog: Catalog = Depends(get_catalog)
):
    product = await catalog.get_product(product_id)

    update_data = {k: v for k, v in product_update.dict().items() if v is not None}
    if update_data:
        update_data["updated_at"] = datetime.utcnow()
        await app.mongodb.products.update_one({"_id": product["_id"]}, {"$set": update_data})

    updated_product = await catalog.get_product(product_id)
    return SuccessResponse(data=product_response(updated_product), message="Product updated successfully")

@app.put("/products/{product_id}/inventory", response_model=SuccessResponse[ProductResponse])
async def update_inventory(
    product_id: str,
    body: InventoryUpdate,
    admin: dict = Depends(require_admin),
    catalog: Catalog = Depends(get_catalog)
):
    product = await catalog.set_inventory(product_id, body.inventory)
    logger.info(f"Inventory set to {body.inventory}", extra={"product_id": product_id})
    return SuccessResponse(data=product_response(product), message="Inventory updated successfully")

@app.delete("/products/{product_id}", response_model=SuccessResponse[dict])
async def delete_product(
    product_id: str,
    admin: dict = Depends(require_admin),
    catalog: Catalog = Depends(get_catalog)
):
    product = await catalog.get_product(product_id)
    # Soft delete; past orders keep their snapshots either way
    await app.mongodb.products.update_one(
        {"_id": product["_id"]},
        {"$set": {"is_available": False, "updated_at": datetime.utcnow()}}
    )
    return SuccessResponse(data={"id": product_id}, message="Product deleted successfully")

# Customizations
@app.get("/customizations", response_model=SuccessResponse[List[CustomizationResponse]])
async def list_customizations(
    type: Optional[str] = None,
    category: Optional[str] = None,
    catalog: Catalog = Depends(get_catalog)
):
    customizations = []
    for doc in await catalog.list_customizations():
        if type and doc["type"] != type:
            continue
        applicable = doc.get("applicable_categories") or []
        if category and applicable and category not in applicable:
            continue
        customizations.append(CustomizationResponse(**with_id(doc)))
    return SuccessResponse(data=customizations)

@app.post("/customizations", response_model=SuccessResponse[CustomizationResponse])
async def create_customization(customization: CustomizationCreate, admin: dict = Depends(require_admin)):
    customization_db = CustomizationDB(**customization.dict())
    new_doc = await app.mongodb.customizations.insert_one(customization_db.dict(by_alias=True, exclude={"id"}))
    created = await app.mongodb.customizations.find_one({"_id": new_doc.inserted_id})
    return SuccessResponse(data=CustomizationResponse(**with_id(created)), message="Customization created successfully")

@app.get("/customizations/admin/all", response_model=SuccessResponse[List[CustomizationResponse]])
async def list_all_customizations(
    admin: dict = Depends(require_admin),
    catalog: Catalog = Depends(get_catalog)
):
    docs = await catalog.list_customizations(include_unavailable=True)
    return SuccessResponse(data=[CustomizationResponse(**with_id(doc)) for doc in docs])

@app.put("/customizations/{customization_id}", response_model=SuccessResponse[CustomizationResponse])
async def update_customization(
    customization_id: str,
    body: CustomizationUpdate,
    admin: dict = Depends(require_admin),
    catalog: Catalog = Depends(get_catalog)
):
    updated = await catalog.update_customization(customization_id, body.dict(exclude_unset=True))
    return SuccessResponse(data=CustomizationResponse(**with_id(updated)), message="Customization updated successfully")

@app.put("/customizations/{customization_id}/toggle", response_model=SuccessResponse[CustomizationResponse])
async def toggle_customization(
    customization_id: str,
    admin: dict = Depends(require_admin),
    catalog: Catalog = Depends(get_catalog)
):
    updated = await catalog.toggle_customization(customization_id)
    state = "enabled" if updated["is_available"] else "disabled"
    return SuccessResponse(data=CustomizationResponse(**with_id(updated)), message=f"Customization {state}")

@app.delete("/customizations/{customization_id}", response_model=SuccessResponse[dict])
async def delete_customization(
    customization_id: str,
    admin: dict = Depends(require_admin),
    catalog: Catalog = Depends(get_catalog)
):
    await catalog.delete_customization(customization_id)
    return SuccessResponse(data={"id": customization_id}, message="Customization deleted successfully")

# Cart
@app.get("/cart", response_model=SuccessResponse[CartResponse])
async def get_cart(
    identity: IdentityContext = Depends(get_identity),
    carts: CartService = Depends(get_cart_service)
):
    cart = await carts.get(identity)
    return SuccessResponse(data=CartResponse(**with_id(cart)))

@app.post("/cart/items", response_model=SuccessResponse[CartResponse])
async def add_to_cart(
    item: CartItemAdd,
    identity: IdentityContext = Depends(get_identity),
    carts: CartService = Depends(get_cart_service)
):
    cart = await carts.add_item(
        identity,
        item.product_id,
        quantity=item.quantity,
        size=item.size,
        customization_ids=item.customizations,
        notes=item.notes,
    )
    return SuccessResponse(data=CartResponse(**with_id(cart)), message="Item added to cart")

@app.put("/cart/items/{item_id}", response_model=SuccessResponse[CartResponse])
async def update_cart_item(
    item_id: str,
    update: CartItemUpdate,
    identity: IdentityContext = Depends(get_identity),
    carts: CartService = Depends(get_cart_service)
):
    cart = await carts.update_item_quantity(identity, item_id, update.quantity)
    return SuccessResponse(data=CartResponse(**with_id(cart)))

@app.delete("/cart/items/{item_id}", response_model=SuccessResponse[CartResponse])
async def remove_cart_item(
    item_id: str,
    identity: IdentityContext = Depends(get_identity),
    carts: CartService = Depends(get_cart_service)
):
    cart = await carts.remove_item(identity, item_id)
    return SuccessResponse(data=CartResponse(**with_id(cart)), message="Item removed from cart")

@app.delete("/cart", response_model=SuccessResponse[CartResponse])
async def clear_cart(
    identity: IdentityContext = Depends(get_identity),
    carts: CartService = Depends(get_cart_service)
):
    cart = await carts.clear(identity)
    return SuccessResponse(data=CartResponse(**with_id(cart)), message="Cart cleared")

@app.post("/cart/merge", response_model=SuccessResponse[CartResponse])
async def merge_cart(
    body: CartMerge,
    identity: IdentityContext = Depends(get_user_identity),
    carts: CartService = Depends(get_cart_service)
):
    cart = await carts.merge(identity.user_id, body.session_id)
    return SuccessResponse(data=CartResponse(**with_id(cart)), message="Cart merged")

# Coupons
@app.post("/coupons/validate", response_model=SuccessResponse[CouponValidateResponse])
async def validate_coupon(
    body: CouponValidateRequest,
    identity: Optional[IdentityContext] = Depends(get_optional_identity),
    coupons: CouponLedger = Depends(get_coupon_ledger)
):
    user_id = identity.user_id if identity else None
    result = await coupons.validate(body.code, body.subtotal, user_id)
    coupon = result.coupon or {}
    return SuccessResponse(data=CouponValidateResponse(
        code=normalize_code(body.code),
        valid=result.valid,
        discount=result.discount,
        reason=result.reason,
        type=coupon.get("type") if result.valid else None,
        value=coupon.get("value") if result.valid else None,
        description=coupon.get("description") if result.valid else None,
    ))

@app.post("/coupons", response_model=SuccessResponse[CouponResponse])
async def create_coupon(
    coupon: CouponCreate,
    admin: dict = Depends(require_admin),
    coupons: CouponLedger = Depends(get_coupon_ledger)
):
    created = await coupons.create(coupon.dict())
    logger.info("Coupon created", extra={"coupon_code": created["code"]})
    return SuccessResponse(data=coupon_response(created), message="Coupon created successfully")

@app.get("/coupons", response_model=SuccessResponse[CouponListResponse])
async def list_coupons(
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: dict = Depends(require_admin),
    coupons: CouponLedger = Depends(get_coupon_ledger)
):
    docs, total = await coupons.list_coupons(is_active=is_active, page=page, limit=limit)
    return SuccessResponse(data=CouponListResponse(
        coupons=[coupon_response(doc) for doc in docs],
        total=total,
        page=page,
        limit=limit
    ))

@app.get("/coupons/{coupon_id}", response_model=SuccessResponse[CouponResponse])
async def get_coupon(
    coupon_id: str,
    admin: dict = Depends(require_admin),
    coupons: CouponLedger = Depends(get_coupon_ledger)
):
    return SuccessResponse(data=coupon_response(await coupons.get(coupon_id)))

@app.put("/coupons/{coupon_id}", response_model=SuccessResponse[CouponResponse])
async def update_coupon(
    coupon_id: str,
    coupon_update: CouponUpdate,
    admin: dict = Depends(require_admin),
    coupons: CouponLedger = Depends(get_coupon_ledger)
):
    updated = await coupons.update(coupon_id, coupon_update.dict(exclude_unset=True))
    return SuccessResponse(data=coupon_response(updated), message="Coupon updated successfully")

@app.put("/coupons/{coupon_id}/toggle", response_model=SuccessResponse[CouponResponse])
async def toggle_coupon(
    coupon_id: str,
    admin: dict = Depends(require_admin),
    coupons: CouponLedger = Depends(get_coupon_ledger)
):
    updated = await coupons.toggle(coupon_id)
    state = "activated" if updated["is_active"] else "deactivated"
    return SuccessResponse(data=coupon_response(updated), message=f"Coupon {state}")

@app.delete("/coupons/{coupon_id}", response_model=SuccessResponse[dict])
async def delete_coupon(
    coupon_id: str,
    admin: dict = Depends(require_admin),
    coupons: CouponLedger = Depends(get_coupon_ledger)
):
    await coupons.delete(coupon_id)
    return SuccessResponse(data={"id": coupon_id}, message="Coupon deleted successfully")

# Orders
@app.post("/orders", response_model=SuccessResponse[OrderResponse])
async def create_order(
    order: OrderCreate,
    identity: IdentityContext = Depends(get_identity),
    checkout: CheckoutService = Depends(get_checkout_service)
):
    created = await checkout.place_order(
        identity,
        order_type=order.type,
        customer_info=order.customer_info.dict(),
        payment_method=order.payment_method,
        delivery_address=order.delivery_address.dict() if order.delivery_address else None,
        coupon_code=order.coupon_code,
        notes=order.notes,
    )
    return SuccessResponse(data=order_response(created), message="Order placed successfully")

@app.get("/orders/my-orders", response_model=SuccessResponse[OrderListResponse])
async def my_orders(
    order_status: Optional[OrderStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    identity: IdentityContext = Depends(get_identity)
):
    query = identity.owner_filter()
    if order_status:
        query["status"] = order_status
    skip = (page - 1) * limit
    total = await app.mongodb.orders.count_documents(query)
    cursor = app.mongodb.orders.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
    orders = [order_response(doc) for doc in await cursor.to_list(length=limit)]
    return SuccessResponse(data=OrderListResponse(orders=orders, total=total, page=page, limit=limit))

@app.get("/orders/track/{order_number}", response_model=SuccessResponse[OrderTrackResponse])
async def track_order(order_number: str):
    # Public; only what a customer would see on a tracking page
    order = await app.mongodb.orders.find_one({"order_number": order_number.upper()})
    if not order:
        raise NotFoundException("Order not found")
    return SuccessResponse(data=OrderTrackResponse(**order))

@app.get("/orders/admin/analytics", response_model=SuccessResponse[dict])
async def order_analytics(days: int = Query(30, ge=1, le=365), admin: dict = Depends(require_admin)):
    since = datetime.utcnow() - timedelta(days=days)
    match = {"$match": {"created_at": {"$gte": since}}}

    by_status = await app.mongodb.orders.aggregate([
        match,
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "revenue": {"$sum": "$total"}}},
    ]).to_list(length=None)

    top_products = await app.mongodb.orders.aggregate([
        match,
        {"$match": {"status": {"$ne": CANCELLED}}},
        {"$unwind": "$items"},
        {"$group": {"_id": "$items.product_id", "name": {"$first": "$items.name"},
                    "quantity": {"$sum": "$items.quantity"}}},
        {"$sort": {"quantity": -1}},
        {"$limit": 5},
    ]).to_list(length=None)

    # order_date is the YYYYMMDD stamp baked into the order number
    daily = await app.mongodb.orders.aggregate([
        match,
        {"$match": {"status": {"$ne": CANCELLED}}},
        {"$group": {"_id": "$order_date", "orders": {"$sum": 1}, "revenue": {"$sum": "$total"}}},
        {"$sort": {"_id": 1}},
    ]).to_list(length=None)

    status_counts = {row["_id"]: row["count"] for row in by_status}
    revenue = sum(row["revenue"] for row in by_status if row["_id"] != CANCELLED)
    placed = sum(row["count"] for row in by_status if row["_id"] != CANCELLED)

    return SuccessResponse(data={
        "period_days": days,
        "total_orders": sum(status_counts.values()),
        "orders_by_status": status_counts,
        "revenue": round(revenue, 2),
        "average_order_value": round(revenue / placed, 2) if placed else 0,
        "top_products": [
            {"product_id": row["_id"], "name": row["name"], "quantity": row["quantity"]}
            for row in top_products
        ],
        "daily_revenue": [
            {"date": row["_id"], "orders": row["orders"], "revenue": round(row["revenue"], 2)}
            for row in daily
        ],
    })

@app.get("/orders", response_model=SuccessResponse[OrderListResponse])
async def list_orders(
    order_status: Optional[OrderStatus] = Query(None, alias="status"),
    order_type: Optional[OrderType] = Query(None, alias="type"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: dict = Depends(require_admin)
):
    query = {}
    if order_status:
        query["status"] = order_status
    if order_type:
        query["type"] = order_type
    skip = (page - 1) * limit
    total = await app.mongodb.orders.count_documents(query)
    cursor = app.mongodb.orders.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
    orders = [order_response(doc) for doc in await cursor.to_list(length=limit)]
    return SuccessResponse(data=OrderListResponse(orders=orders, total=total, page=page, limit=limit))

@app.get("/orders/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_order(
    order_id: str,
    identity: IdentityContext = Depends(get_identity),
    machine: OrderStatusMachine = Depends(get_status_machine)
):
    order = await machine.get_order(order_id)
    if not identity.is_admin and not identity.owns(order):
        raise ForbiddenException("Not authorized to view this order")
    return SuccessResponse(data=order_response(order))

@app.put("/orders/{order_id}/cancel", response_model=SuccessResponse[OrderResponse])
async def cancel_order(
    order_id: str,
    identity: IdentityContext = Depends(get_identity),
    machine: OrderStatusMachine = Depends(get_status_machine)
):
    order = await machine.cancel_by_owner(order_id, identity)
    return SuccessResponse(data=order_response(order), message="Order cancelled successfully")

@app.put("/orders/{order_id}/status", response_model=SuccessResponse[OrderResponse])
async def update_order_status(
    order_id: str,
    status_update: OrderStatusUpdate,
    admin: dict = Depends(require_admin),
    machine: OrderStatusMachine = Depends(get_status_machine)
):
    order = await machine.transition(order_id, status_update.status)
    return SuccessResponse(data=order_response(order), message=f"Order status updated to {order['status']}")

# Recommendations
def recommendation_responses(entries: List[dict]) -> List[RecommendationResponse]:
    return [
        RecommendationResponse(
            product=product_response(entry["product"]),
            score=entry["score"],
            reasons=entry["reasons"],
        )
        for entry in entries
    ]

@app.get("/recommendations", response_model=SuccessResponse[List[RecommendationResponse]])
async def recommendations(
    limit: int = Query(6, ge=1, le=20),
    identity: Optional[IdentityContext] = Depends(get_optional_identity),
    service: RecommendationService = Depends(get_recommendation_service)
):
    user_id = identity.user_id if identity else None
    entries = await service.recommend(user_id, limit=limit)
    return SuccessResponse(data=recommendation_responses(entries))

@app.get("/recommendations/popular", response_model=SuccessResponse[List[RecommendationResponse]])
async def popular_items(
    limit: int = Query(6, ge=1, le=20),
    service: RecommendationService = Depends(get_recommendation_service)
):
    return SuccessResponse(data=recommendation_responses(await service.popular(limit)))

@app.get("/recommendations/trending", response_model=SuccessResponse[List[RecommendationResponse]])
async def trending_items(
    limit: int = Query(6, ge=1, le=20),
    service: RecommendationService = Depends(get_recommendation_service)
):
    return SuccessResponse(data=recommendation_responses(await service.trending(limit)))

@app.post("/recommendations/similar", response_model=SuccessResponse[List[RecommendationResponse]])
async def similar_items(
    body: SimilarItemsRequest,
    limit: int = Query(4, ge=1, le=20),
    service: RecommendationService = Depends(get_recommendation_service)
):
    entries = await service.similar(body.product_ids, limit=limit)
    return SuccessResponse(data=recommendation_responses(entries))

@app.get("/recommendations/preferences", response_model=SuccessResponse[PreferencesResponse])
async def get_preferences(
    identity: IdentityContext = Depends(get_user_identity),
    service: RecommendationService = Depends(get_recommendation_service)
):
    return SuccessResponse(data=PreferencesResponse(**await service.preferences(identity.user_id)))

@app.put("/recommendations/preferences/dietary", response_model=SuccessResponse[PreferencesResponse])
async def update_dietary_preferences(
    body: DietaryPreferencesUpdate,
    identity: IdentityContext = Depends(get_user_identity),
    service: RecommendationService = Depends(get_recommendation_service)
):
    preferences = await service.update_dietary(identity.user_id, **body.dict())
    return SuccessResponse(data=PreferencesResponse(**preferences), message="Dietary preferences updated")

@app.get("/recommendations/reorder", response_model=SuccessResponse[List[ReorderSuggestion]])
async def reorder_suggestions(
    identity: IdentityContext = Depends(get_user_identity),
    service: RecommendationService = Depends(get_recommendation_service)
):
    suggestions = await service.reorder_suggestions(identity.user_id)
    return SuccessResponse(data=[
        ReorderSuggestion(
            product=product_response(entry["product"]),
            order_count=entry["order_count"],
            reason=entry["reason"],
        )
        for entry in suggestions
    ])

@app.get("/health", response_model=HealthResponse)
async def health_check():
    db_status = "unhealthy"
    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    status_code = "healthy" if db_status == "connected" else "unhealthy"

    if status_code == "unhealthy":
        logger.error(f"Health Check Failed: DB={db_status}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service=SERVICE_NAME,
        status=status_code,
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status
    )

import asyncio
import logging
import os
import sys
import threading
import time
import traceback
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError, WriteError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import TokenClaims, get_current_user, login, register_user, require_role
from database import (
    NOTIFICATIONS,
    ORDERS,
    PRODUCTS,
    USERS,
    connect,
    create_document,
    get_db,
    get_documents,
    init_database,
    now_utc,
    serialize,
    to_object_id,
)
from errors import (
    AppError,
    AuthorizationError,
    ConflictError,
    DatabaseError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from orders import check_transition, generate_order_number
from schemas import (
    AddFundsRequest,
    BalanceResponse,
    CategorySummary,
    HealthResponse,
    LoginRequest,
    Notification,
    Order,
    OrderCreate,
    OrderStatusUpdate,
    Product,
    ProductCreate,
    RegisterRequest,
    TokenResponse,
)
from settings import Settings, configure_logging, get_settings
from storage import ImageStore, get_image_store

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
}


def notify(db: Database, user_id: ObjectId, type_: str, message: str) -> None:
    """Record a notification without failing the request that triggered it."""
    notification = Notification(user=str(user_id), type=type_, message=message)
    doc = notification.to_document()
    doc["user"] = user_id
    try:
        create_document(db, NOTIFICATIONS, doc)
    except PyMongoError:
        logger.warning("Could not record %s notification for %s", type_, user_id, exc_info=True)


# Auth Endpoints
auth_router = APIRouter()


@auth_router.post("/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterRequest, db=Depends(get_db), settings=Depends(get_settings)):
    return register_user(db, settings, payload.name, payload.email, payload.password, payload.role)


@auth_router.post("/login", response_model=TokenResponse)
def login_user(payload: LoginRequest, db=Depends(get_db), settings=Depends(get_settings)):
    return login(db, settings, payload.email, payload.password)


# Product Endpoints
products_router = APIRouter()


@products_router.get("")
def list_products(category: Optional[str] = None, db=Depends(get_db)):
    query = {"category": category} if category else {}
    return [serialize(p) for p in get_documents(db, PRODUCTS, query)]


@products_router.get("/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    doc = db[PRODUCTS].find_one({"_id": to_object_id(product_id, "product id")})
    if not doc:
        raise NotFoundError("Product", product_id)
    return serialize(doc)


def upload_images(store: ImageStore, images: Optional[List[str]]) -> List[str]:
    """Upload each image in order, skipping the ones the store rejects."""
    urls = []
    images = images or []
    if images:
        logger.info("Processing %d images for upload", len(images))
    for image in images:
        try:
            urls.append(store.store(image))
        except (ValidationError, StorageUnavailableError) as exc:
            logger.warning("Individual image upload error: %s", exc.message)
    if images:
        logger.info("Successfully uploaded %d images", len(urls))
    return urls


@products_router.post("", status_code=201)
def create_product(
    payload: ProductCreate,
    user: TokenClaims = Depends(require_role("artisan")),
    db=Depends(get_db),
    store=Depends(get_image_store),
):
    artisan_id = to_object_id(user.user_id, "artisan")
    image_urls = upload_images(store, payload.images)

    product = Product(
        name=payload.name,
        description=payload.description,
        price=payload.price,
        category=payload.category,
        stock=payload.stock,
        images=image_urls,
        artisan=user.user_id,
    )
    doc = product.to_document()
    doc["artisan"] = artisan_id

    try:
        doc = create_document(db, PRODUCTS, doc)
    except PyMongoError:
        logger.exception("Product creation error")
        # The record never landed; don't leave its images behind
        for url in image_urls:
            store.delete(url)
        raise DatabaseError("Error creating product")

    logger.info("Product saved with images: id=%s imageCount=%d", doc["_id"], len(image_urls))
    return serialize(doc)


# Categories
categories_router = APIRouter()

CATEGORY_PIPELINE = [
    {
        "$group": {
            "_id": "$category",
            "products": {"$sum": 1},
            "description": {"$first": "$description"},
            "images": {"$first": "$images"},
        }
    },
    {"$sort": {"_id": 1}},
]


@categories_router.get("", response_model=List[CategorySummary])
def list_categories(db=Depends(get_db)):
    # First product seen in each category supplies the description and icon
    return [
        {
            "name": group["_id"],
            "icon": (group.get("images") or [None])[0],
            "description": group.get("description"),
            "products": group["products"],
        }
        for group in db[PRODUCTS].aggregate(CATEGORY_PIPELINE)
    ]


# Orders
orders_router = APIRouter()


@orders_router.get("")
def list_orders(user: TokenClaims = Depends(get_current_user), db=Depends(get_db)):
    buyer_id = to_object_id(user.user_id, "user")
    orders = get_documents(db, ORDERS, {"buyer": buyer_id})

    product_ids = {item.get("product") for o in orders for item in o.get("products", [])}
    product_ids.discard(None)
    products: Dict[ObjectId, Dict[str, Any]] = {}
    if product_ids:
        products = {p["_id"]: p for p in db[PRODUCTS].find({"_id": {"$in": list(product_ids)}})}

    for order in orders:
        for item in order.get("products", []):
            item["product"] = products.get(item.get("product"))
    return [serialize(o) for o in orders]


@orders_router.post("", status_code=201)
def create_order(payload: OrderCreate, user: TokenClaims = Depends(get_current_user), db=Depends(get_db)):
    buyer_id = to_object_id(user.user_id, "user")
    items = [
        {"product": to_object_id(item.product, "product"), "quantity": item.quantity, "price": item.price}
        for item in payload.products
    ]

    order = Order(
        buyer=user.user_id,
        products=payload.products,
        total_amount=payload.total_amount,
        shipping_address=payload.shipping_address,
        order_number=generate_order_number(),
    )
    doc = order.to_document()
    doc["buyer"] = buyer_id
    doc["products"] = items

    try:
        doc = create_document(db, ORDERS, doc)
    except DuplicateKeyError:
        raise ConflictError("Order number already in use, please retry")
    except WriteError as exc:
        raise ValidationError(f"Order rejected: {exc}")

    notify(db, buyer_id, "order", f"Your order {doc['orderNumber']} has been placed")
    return serialize(doc)


@orders_router.patch("/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    user: TokenClaims = Depends(get_current_user),
    db=Depends(get_db),
):
    oid = to_object_id(order_id, "order id")
    caller_id = to_object_id(user.user_id, "user")

    order = db[ORDERS].find_one({"_id": oid})
    if not order:
        raise NotFoundError("Order", order_id)

    if order["buyer"] == caller_id:
        if payload.status != "cancelled":
            raise AuthorizationError("Buyers can only cancel their orders")
    elif user.role == "artisan":
        product_ids = [item["product"] for item in order.get("products", [])]
        if not db[PRODUCTS].find_one({"_id": {"$in": product_ids}, "artisan": caller_id}):
            raise NotFoundError("Order", order_id)
    else:
        raise NotFoundError("Order", order_id)

    current = order.get("status", "pending")
    check_transition(current, payload.status)

    updated = db[ORDERS].find_one_and_update(
        {"_id": oid, "status": current},
        {"$set": {"status": payload.status, "updatedAt": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ConflictError("Order status changed meanwhile, reload and retry")

    notify(db, order["buyer"], "update", f"Order {order['orderNumber']} is now {payload.status}")
    return serialize(updated)


# Wallet
wallet_router = APIRouter()


@wallet_router.get("/balance", response_model=BalanceResponse)
def get_balance(user: TokenClaims = Depends(get_current_user), db=Depends(get_db)):
    doc = db[USERS].find_one({"_id": to_object_id(user.user_id, "user")}, {"wallet": 1})
    if not doc:
        raise NotFoundError("User", user.user_id)
    return {"balance": doc.get("wallet", 0)}


@wallet_router.post("/add-funds", response_model=BalanceResponse)
def add_funds(payload: AddFundsRequest, user: TokenClaims = Depends(get_current_user), db=Depends(get_db)):
    user_id = to_object_id(user.user_id, "user")
    # Single atomic increment; the filter refuses anything that would end below zero
    doc = db[USERS].find_one_and_update(
        {"_id": user_id, "wallet": {"$gte": -payload.amount}},
        {"$inc": {"wallet": payload.amount}},
        projection={"wallet": 1},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        if db[USERS].find_one({"_id": user_id}, {"_id": 1}) is None:
            raise NotFoundError("User", user.user_id)
        raise ValidationError("Insufficient wallet balance", field="amount")

    notify(db, user_id, "payment", f"Wallet updated by {payload.amount:.2f}")
    return {"balance": doc["wallet"]}


# Notifications
notifications_router = APIRouter()


@notifications_router.get("")
def list_notifications(user: TokenClaims = Depends(get_current_user), db=Depends(get_db)):
    docs = get_documents(db, NOTIFICATIONS, {"user": to_object_id(user.user_id, "user")})
    return [serialize(n) for n in docs]


@notifications_router.patch("/{notification_id}/read")
def mark_notification_read(
    notification_id: str,
    user: TokenClaims = Depends(get_current_user),
    db=Depends(get_db),
):
    doc = db[NOTIFICATIONS].find_one_and_update(
        {"_id": to_object_id(notification_id, "notification id"), "user": to_object_id(user.user_id, "user")},
        {"$set": {"read": True}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise NotFoundError("Notification", notification_id)
    return serialize(doc)


# ---------------------- Error handling ----------------------

def error_response(request: Request, body: Dict[str, Any], exc: Optional[BaseException] = None) -> JSONResponse:
    settings: Settings = request.app.state.settings
    if settings.is_development and exc is not None:
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(status_code=body["statusCode"], content=body)


async def handle_app_error(request: Request, exc: AppError):
    body = exc.to_dict()
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
        if not request.app.state.settings.is_development:
            body["message"] = "Internal Server Error"
            body.pop("details", None)
    return error_response(request, body, exc if exc.status_code >= 500 else None)


async def handle_request_validation(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err["loc"][1:]) or str(err["loc"][0]), "message": err["msg"]}
        for err in exc.errors()
    ]
    error = ValidationError("Invalid request data", details={"errors": errors})
    return error_response(request, error.to_dict())


async def handle_http_exception(request: Request, exc: StarletteHTTPException):
    message = "Route not found" if exc.status_code == 404 else str(exc.detail)
    error = AppError(message, code="HTTP_ERROR", status_code=exc.status_code)
    response = error_response(request, error.to_dict())
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def handle_unexpected(request: Request, exc: Exception):
    logger.error("Global error on %s %s", request.method, request.url.path, exc_info=exc)
    return error_response(request, AppError("Internal Server Error").to_dict(), exc)


# ---------------------- Process wiring ----------------------

def _exit_on_async_error(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
    logger.critical("Unhandled async error: %s", context.get("message"), exc_info=context.get("exception"))
    os._exit(1)


def install_fatal_handlers() -> None:
    """Any uncaught error outside a request terminates the process."""

    def excepthook(exc_type, exc, tb):
        logger.critical("Uncaught exception", exc_info=(exc_type, exc, tb))
        os._exit(1)

    sys.excepthook = excepthook
    threading.excepthook = lambda args: excepthook(args.exc_type, args.exc_value, args.exc_traceback)


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    image_store: Optional[ImageStore] = None,
) -> FastAPI:
    if settings is None:
        settings = Settings.from_env()
        configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = None
        if app.state.db is None:
            try:
                client = await run_in_threadpool(connect, settings)
                app.state.db = client[settings.database_name]
                await run_in_threadpool(init_database, app.state.db)
            except PyMongoError:
                logger.critical("Failed to setup database", exc_info=True)
                raise
            logger.info("Database setup completed")
        if app.state.image_store is None:
            app.state.image_store = ImageStore.from_settings(settings)
            await run_in_threadpool(app.state.image_store.ping)

        asyncio.get_running_loop().set_exception_handler(_exit_on_async_error)
        logger.info("Server is running on port %s", settings.port)
        logger.info("Environment: %s", settings.environment)
        yield
        if client is not None:
            client.close()

    app = FastAPI(title="Kalakriti Marketplace API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db
    app.state.image_store = image_store

    # Registered innermost first; CORS ends up outermost.
    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):
        length = request.headers.get("content-length")
        if length and length.isdigit() and int(length) > settings.max_body_bytes:
            error = AppError("Request entity too large", code="PAYLOAD_TOO_LARGE", status_code=413)
            return JSONResponse(status_code=413, content=error.to_dict())
        return await call_next(request)

    if settings.is_development:
        @app.middleware("http")
        async def access_log(request: Request, call_next):
            started = time.perf_counter()
            response = await call_next(request)
            elapsed = (time.perf_counter() - started) * 1000
            logger.info("%s %s %d %.1fms", request.method, request.url.path, response.status_code, elapsed)
            return response

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, handle_app_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(Exception, handle_unexpected)

    app.include_router(auth_router, prefix="/api/auth", tags=["auth"])
    app.include_router(products_router, prefix="/api/products", tags=["products"])
    app.include_router(orders_router, prefix="/api/orders", tags=["orders"])
    app.include_router(wallet_router, prefix="/api/wallet", tags=["wallet"])
    app.include_router(notifications_router, prefix="/api/notifications", tags=["notifications"])
    app.include_router(categories_router, prefix="/api/categories", tags=["categories"])

    @app.get("/health", response_model=HealthResponse)
    def health():
        return {"status": "OK", "timestamp": now_utc()}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    install_fatal_handlers()
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)

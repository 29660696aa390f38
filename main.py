import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import bcrypt
import jwt
from fastapi import APIRouter, Depends, FastAPI, File, Header, Path, Query, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.datastructures import UploadFile as StarletteUploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

import schemas
from catalog import CatalogQuery, select_products
from config import Settings
from database import Store
from errors import Conflict, Forbidden, MarketplaceError, NotFound, Unauthorized, ValidationFailed
from moderation import (
    ProductAction,
    action_for_requested_status,
    ensure_no_existing_shop,
    initial_order_status,
    next_product_state,
)
from uploads import URL_PREFIX, LocalUploads

JWT_ALGO = "HS256"
NO_STORE = "no-store, max-age=0"

logger = logging.getLogger(__name__)

api = APIRouter(prefix="/api")


# Wiring & helpers
def get_store(request: Request) -> Store:
    return request.app.state.store


def get_uploads(request: Request) -> LocalUploads:
    return request.app.state.uploads


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds)).decode()


def check_password(password: str, password_hash: str) -> bool:
    secret = password.encode()
    if len(secret) > schemas.MAX_PASSWORD_BYTES:
        return False
    return bcrypt.checkpw(secret, password_hash.encode())


def create_token(user: schemas.User, secret: str) -> str:
    payload = {
        "sub": str(user.id),
        "username": user.username,
        "is_admin": is_admin(user),
        "exp": datetime.now(timezone.utc) + timedelta(days=7),
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGO)


def is_admin(user: Optional[schemas.User]) -> bool:
    return bool(user and (user.is_admin or user.role == "admin"))


async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[schemas.User]:
    if not authorization:
        return None
    try:
        scheme, token = authorization.split(" ")
        if scheme.lower() != "bearer":
            return None
        payload = jwt.decode(token, request.app.state.settings.jwt_secret, algorithms=[JWT_ALGO])
        user_id = int(payload["sub"])
    except (ValueError, KeyError, jwt.PyJWTError):
        return None
    return await get_store(request).get_user(user_id)


async def require_user(user: Optional[schemas.User] = Depends(get_current_user)) -> schemas.User:
    if user is None:
        raise Unauthorized("User identity missing")
    return user


async def require_admin(user: schemas.User = Depends(require_user)) -> schemas.User:
    if not is_admin(user):
        raise Forbidden("Admin only")
    return user


async def read_body(request: Request, file_field: str = "image") -> Tuple[dict, Optional[StarletteUploadFile]]:
    """Read a JSON or form body; form bodies may carry one file under `file_field`."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        data, upload = {}, None
        for key, value in form.multi_items():
            if isinstance(value, StarletteUploadFile):
                if key == file_field and value.filename:
                    upload = value
            else:
                data[key] = value
        return data, upload

    raw = await request.body()
    if not raw.strip():
        return {}, None
    try:
        body = await request.json()
    except ValueError:
        raise ValidationFailed("Malformed JSON body")
    if not isinstance(body, dict):
        raise ValidationFailed("Expected a JSON object")
    return body, None


async def owns_shop(store: Store, user: Optional[schemas.User], shop_id: Optional[int]) -> bool:
    if user is None or shop_id is None:
        return False
    shop = await store.get_shop(shop_id)
    return shop is not None and shop.owner_id == user.id


async def editable_product(store: Store, product_id: int, user: schemas.User) -> schemas.Product:
    product = await store.get_product(product_id)
    if product is None:
        raise NotFound("Product not found")
    if is_admin(user) or product.seller_id == user.id or await owns_shop(store, user, product.shop_id):
        return product
    raise Forbidden("Not your product")


async def promote_to_seller(store: Store, user: schemas.User) -> None:
    if not is_admin(user) and user.role != "seller":
        await store.update_user(user.id, role="seller")


# Root / Health
@api.get("/health")
async def health(store: Store = Depends(get_store)):
    try:
        await store.ping()
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Health check failed: %s", exc)
        return JSONResponse(status_code=500, content={"status": "error", "message": "DB unavailable"})
    return {"status": "ok"}


# Auth Endpoints
@api.post("/register", response_model=schemas.TokenResponse, status_code=201)
async def register(payload: schemas.SignupRequest, request: Request, store: Store = Depends(get_store)):
    settings = request.app.state.settings
    if await store.get_user_credentials(payload.username) is not None:
        raise Conflict("Username already taken")
    user = await store.create_user(payload.username, hash_password(payload.password, settings.bcrypt_rounds))
    return schemas.TokenResponse(token=create_token(user, settings.jwt_secret), user=user)


@api.post("/login", response_model=schemas.TokenResponse)
async def login(payload: schemas.LoginRequest, request: Request, store: Store = Depends(get_store)):
    record = await store.get_user_credentials(payload.username)
    if not record or not check_password(payload.password, record.password_hash):
        raise Unauthorized("Invalid credentials")
    user = schemas.User.model_validate(record)
    return schemas.TokenResponse(token=create_token(user, request.app.state.settings.jwt_secret), user=user)


@api.get("/user/me", response_model=schemas.User)
async def current_user(user: schemas.User = Depends(require_user)):
    return user


@api.patch("/user/profile")
async def update_profile(
    payload: schemas.ProfileUpdate,
    user: schemas.User = Depends(require_user),
    store: Store = Depends(get_store),
):
    await store.update_user(
        user.id,
        shop_name=payload.shop_name,
        shop_address=payload.shop_address,
        maps_link=payload.maps_link,
    )
    shop = await store.get_shop_by_owner(user.id)
    if shop:
        contact = payload.contact_number
        await store.update_shop(
            shop.id,
            name=payload.shop_name or shop.name,
            address=payload.shop_address or shop.address,
            contact_number=contact or shop.contact_number,
            phone=shop.phone or contact or shop.mobile,
            mobile=shop.mobile or contact or shop.phone,
        )
    return {"success": True}


# Product Endpoints
@api.get("/products", response_model=List[schemas.ProductWithSeller])
async def list_products(
    response: Response,
    shop_id: Optional[int] = Query(None, alias="shopId"),
    search: Optional[str] = None,
    include_all: bool = Query(False, alias="includeAll"),
    status: Optional[str] = None,
    approved: Optional[bool] = None,
    category: Optional[str] = None,
    user: Optional[schemas.User] = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    response.headers["Cache-Control"] = NO_STORE
    query = CatalogQuery(
        shop_id=shop_id,
        search=search,
        category=category,
        approved=approved,
        status=status,
        include_all=include_all,
    )
    if query.include_all and not is_admin(user) and not await owns_shop(store, user, query.shop_id):
        if user is None:
            raise Unauthorized("User identity missing")
        raise Forbidden("Only admins and the shop owner can list every product")

    rows = await store.list_products_with_seller(shop_id=query.shop_id)
    return select_products(rows, query)


@api.get("/products/{product_id}", response_model=schemas.ProductWithSeller)
async def get_product(response: Response, product_id: int = Path(..., gt=0), store: Store = Depends(get_store)):
    response.headers["Cache-Control"] = NO_STORE
    product = await store.get_product_with_seller(product_id)
    if not product:
        raise NotFound("Product not found")
    return product


@api.post("/products", response_model=schemas.Product, status_code=201)
async def create_product(
    payload: schemas.ProductCreate,
    user: schemas.User = Depends(require_user),
    store: Store = Depends(get_store),
):
    if payload.shop_id is not None:
        shop = await store.get_shop(payload.shop_id)
        if shop is None:
            raise ValidationFailed("Unknown shop")
    else:
        shop = await store.get_shop_by_owner(user.id)
        if shop is None:
            raise ValidationFailed("Create a shop before adding products")
    if shop.owner_id != user.id and not is_admin(user):
        raise Forbidden("Not your shop")
    return await store.create_product(shop.id, user.id, payload)


@api.patch("/products/{product_id}", response_model=schemas.Product)
async def update_product(
    request: Request,
    product_id: int = Path(..., gt=0),
    user: schemas.User = Depends(require_user),
    store: Store = Depends(get_store),
    uploads: LocalUploads = Depends(get_uploads),
):
    data, image = await read_body(request)
    payload = schemas.ProductUpdate.model_validate(data)
    action = action_for_requested_status(payload.status) if payload.status else None

    product = await editable_product(store, product_id, user)
    # reject a bad transition before anything is written
    if action is not None:
        next_product_state(product.status, action)
    changes = payload.field_changes()
    async with uploads.staged(image) as image_url:
        if image_url:
            changes["image_url"] = image_url
        return await store.edit_product(product_id, changes, action)


@api.patch("/products/{product_id}/approve", response_model=schemas.Product)
async def approve_product(
    product_id: int = Path(..., gt=0),
    admin: schemas.User = Depends(require_admin),
    store: Store = Depends(get_store),
):
    return await store.transition_product(product_id, ProductAction.APPROVE)


@api.patch("/products/{product_id}/stock", response_model=schemas.Product)
async def toggle_stock(
    product_id: int = Path(..., gt=0),
    user: schemas.User = Depends(require_user),
    store: Store = Depends(get_store),
):
    await editable_product(store, product_id, user)
    return await store.transition_product(product_id, ProductAction.TOGGLE_STOCK)


@api.delete("/products/{product_id}", response_model=schemas.Product)
async def delete_product(
    product_id: int = Path(..., gt=0),
    user: schemas.User = Depends(require_user),
    store: Store = Depends(get_store),
):
    await editable_product(store, product_id, user)
    return await store.transition_product(product_id, ProductAction.SOFT_DELETE)


# Reviews
@api.get("/products/{product_id}/reviews", response_model=List[schemas.Review])
async def list_reviews(
    product_id: int = Path(..., gt=0),
    include_all: bool = Query(False, alias="includeAll"),
    user: Optional[schemas.User] = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    if include_all and not is_admin(user):
        raise Forbidden("Admin only")
    return await store.list_reviews(product_id, approved_only=not include_all)


@api.post("/products/{product_id}/reviews", response_model=schemas.Review, status_code=201)
async def create_review(
    payload: schemas.ReviewCreate,
    product_id: int = Path(..., gt=0),
    store: Store = Depends(get_store),
):
    if await store.get_product(product_id) is None:
        raise NotFound("Product not found")
    return await store.create_review(product_id, payload)


@api.patch("/reviews/{review_id}/approve", response_model=schemas.Review)
async def approve_review(
    review_id: int = Path(..., gt=0),
    admin: schemas.User = Depends(require_admin),
    store: Store = Depends(get_store),
):
    return await store.approve_review(review_id)


# Shop Endpoints
@api.get("/shops", response_model=schemas.ShopList)
async def list_shops(
    response: Response,
    include_all: bool = Query(False, alias="includeAll"),
    user: Optional[schemas.User] = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    response.headers["Cache-Control"] = NO_STORE
    if include_all and not is_admin(user):
        raise Forbidden("Admin only")
    shops = await store.list_shops(approved=None if include_all else True)
    return schemas.ShopList(data=shops)


@api.get("/shops/mine", response_model=Optional[schemas.Shop])
async def my_shop(user: schemas.User = Depends(require_user), store: Store = Depends(get_store)):
    return await store.get_shop_by_owner(user.id)


@api.get("/shops/{shop_id}", response_model=schemas.Shop)
async def get_shop(shop_id: int = Path(..., gt=0), store: Store = Depends(get_store)):
    shop = await store.get_shop(shop_id)
    if not shop:
        raise NotFound("Shop not found")
    return shop


@api.post("/shops", response_model=schemas.Shop, status_code=201)
async def admin_create_shop(
    payload: schemas.ShopCreate,
    admin: schemas.User = Depends(require_admin),
    store: Store = Depends(get_store),
):
    owner = await store.get_user(payload.owner_id)
    if owner is None:
        raise ValidationFailed("Unknown owner")
    ensure_no_existing_shop(await store.get_shop_by_owner(owner.id))
    shop = await store.create_shop(owner.id, payload)
    await promote_to_seller(store, owner)
    logger.info("Shop %s created by admin for user %s", shop.id, owner.id)
    return shop


@api.patch("/shops/{shop_id}/verify", response_model=schemas.Shop)
async def verify_shop(
    shop_id: int = Path(..., gt=0),
    admin: schemas.User = Depends(require_admin),
    store: Store = Depends(get_store),
):
    return await store.update_shop(shop_id, is_verified=True)


@api.get("/partner/shop/{owner_id}", response_model=Optional[schemas.Shop])
async def shop_for_owner(owner_id: int = Path(..., gt=0), store: Store = Depends(get_store)):
    return await store.get_shop_by_owner(owner_id)


@api.post("/partner/shop/create-default", response_model=schemas.Shop)
async def create_default_shop(
    response: Response,
    payload: Optional[schemas.DefaultShopRequest] = None,
    user: schemas.User = Depends(require_user),
    store: Store = Depends(get_store),
):
    existing = await store.get_shop_by_owner(user.id)
    if existing:
        await promote_to_seller(store, user)
        return existing

    payload = payload or schemas.DefaultShopRequest.model_validate({})
    shop = await store.create_shop(user.id, payload)
    await promote_to_seller(store, user)
    logger.info("Shop %s live for user %s", shop.id, user.id)
    response.status_code = 201
    return shop


# Categories
@api.get("/categories", response_model=List[schemas.Category])
async def list_categories(response: Response, store: Store = Depends(get_store)):
    response.headers["Cache-Control"] = NO_STORE
    return await store.list_categories()


@api.post("/categories", response_model=schemas.Category, status_code=201)
async def create_category(
    payload: schemas.CategoryCreate,
    admin: schemas.User = Depends(require_admin),
    store: Store = Depends(get_store),
):
    return await store.create_category(payload)


@api.patch("/categories/{category_id}", response_model=schemas.Category)
async def update_category(
    request: Request,
    category_id: int = Path(..., gt=0),
    admin: schemas.User = Depends(require_admin),
    store: Store = Depends(get_store),
    uploads: LocalUploads = Depends(get_uploads),
):
    data, image = await read_body(request)
    changes = schemas.CategoryUpdate.model_validate(data).model_dump(exclude_unset=True)
    async with uploads.staged(image) as image_url:
        if image_url:
            changes["image_url"] = image_url
        return await store.update_category(category_id, changes)


@api.delete("/categories/{category_id}")
async def delete_category(
    category_id: int = Path(..., gt=0),
    admin: schemas.User = Depends(require_admin),
    store: Store = Depends(get_store),
):
    await store.delete_category(category_id)
    return {"success": True}


# Offers
@api.get("/offers", response_model=List[schemas.Offer])
async def list_offers(active_only: bool = Query(False, alias="activeOnly"), store: Store = Depends(get_store)):
    return await store.list_offers(active_only=active_only)


@api.post("/offers", response_model=schemas.Offer, status_code=201)
async def create_offer(
    payload: schemas.OfferCreate,
    admin: schemas.User = Depends(require_admin),
    store: Store = Depends(get_store),
):
    return await store.create_offer(admin.id, payload)


@api.patch("/offers/{offer_id}", response_model=schemas.Offer)
async def update_offer(
    payload: schemas.OfferUpdate,
    offer_id: int = Path(..., gt=0),
    admin: schemas.User = Depends(require_admin),
    store: Store = Depends(get_store),
):
    return await store.update_offer(offer_id, payload.model_dump(exclude_unset=True))


@api.delete("/offers/{offer_id}")
async def delete_offer(
    offer_id: int = Path(..., gt=0),
    admin: schemas.User = Depends(require_admin),
    store: Store = Depends(get_store),
):
    await store.delete_offer(offer_id)
    return {"success": True}


# Banners
@api.get("/banners", response_model=List[schemas.Banner])
async def list_banners(store: Store = Depends(get_store)):
    return await store.list_banners()


@api.post("/banners", response_model=schemas.Banner, status_code=201)
async def create_banner(
    request: Request,
    admin: schemas.User = Depends(require_admin),
    store: Store = Depends(get_store),
    uploads: LocalUploads = Depends(get_uploads),
):
    data, image = await read_body(request)
    if image is None and not data.get("image"):
        raise ValidationFailed("Image required")
    async with uploads.staged(image) as image_url:
        if image_url:
            data["image"] = image_url
        return await store.create_banner(schemas.BannerCreate.model_validate(data))


@api.patch("/banners/{banner_id}", response_model=schemas.Banner)
async def update_banner(
    request: Request,
    banner_id: int = Path(..., gt=0),
    admin: schemas.User = Depends(require_admin),
    store: Store = Depends(get_store),
    uploads: LocalUploads = Depends(get_uploads),
):
    data, image = await read_body(request)
    if not data.get("image"):
        data.pop("image", None)
    changes = schemas.BannerUpdate.model_validate(data).model_dump(exclude_unset=True)
    async with uploads.staged(image) as image_url:
        if image_url:
            changes["image"] = image_url
        return await store.update_banner(banner_id, changes)


@api.delete("/banners/{banner_id}")
async def delete_banner(
    banner_id: int = Path(..., gt=0),
    admin: schemas.User = Depends(require_admin),
    store: Store = Depends(get_store),
):
    await store.delete_banner(banner_id)
    return {"success": True}


# Orders
@api.post("/orders", response_model=schemas.Order, status_code=201)
async def create_order(payload: schemas.OrderCreate, store: Store = Depends(get_store)):
    # Snapshot as submitted: no price re-check, no product state check, no stock.
    return await store.create_order(payload, initial_order_status(payload.payment_method))


@api.get("/orders", response_model=List[schemas.Order])
async def list_orders(
    phone: Optional[str] = None,
    shop_id: Optional[int] = Query(None, alias="shopId", gt=0),
    include_all: bool = Query(False, alias="includeAll"),
    user: Optional[schemas.User] = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    phone = (phone or "").strip() or None
    if phone:
        return await store.list_orders(phone=phone, shop_id=shop_id)
    if shop_id is not None:
        if not is_admin(user) and not await owns_shop(store, user, shop_id):
            raise Forbidden("Only the shop owner can list its orders")
        return await store.list_orders(shop_id=shop_id)
    if include_all:
        if user is None:
            raise Unauthorized("User identity missing")
        if not is_admin(user):
            raise Forbidden("Admin only")
        return await store.list_orders()
    raise ValidationFailed("phone is required")


@api.patch("/orders/{order_id}", response_model=schemas.Order)
async def update_order(
    payload: schemas.OrderStatusUpdate,
    order_id: int = Path(..., gt=0),
    user: schemas.User = Depends(require_user),
    store: Store = Depends(get_store),
):
    order = await store.get_order(order_id)
    if order is None:
        raise NotFound("Order not found")
    if not is_admin(user) and not await owns_shop(store, user, order.shop_id):
        raise Forbidden("Not your order")
    return await store.update_order_status(order_id, payload.status)


# Cart
@api.get("/cart", response_model=List[schemas.CartItem])
async def list_cart(user: schemas.User = Depends(require_user), store: Store = Depends(get_store)):
    return await store.list_cart(user.id)


@api.post("/cart", response_model=schemas.CartItem, status_code=201)
async def add_to_cart(
    payload: schemas.CartItemCreate,
    user: schemas.User = Depends(require_user),
    store: Store = Depends(get_store),
):
    if await store.get_product(payload.product_id) is None:
        raise NotFound("Product not found")
    return await store.add_to_cart(user.id, payload)


@api.delete("/cart/{item_id}")
async def remove_from_cart(
    item_id: int = Path(..., gt=0),
    user: schemas.User = Depends(require_user),
    store: Store = Depends(get_store),
):
    await store.remove_from_cart(user.id, item_id)
    return {"success": True}


# Upload
@api.post("/upload", response_model=schemas.UploadResult, status_code=201)
async def upload_images(
    images: List[UploadFile] = File(...),
    user: schemas.User = Depends(require_user),
    uploads: LocalUploads = Depends(get_uploads),
):
    return schemas.UploadResult(urls=await uploads.save_all(images))


# Admin
@api.get("/admin/stats", response_model=schemas.AdminStats)
async def admin_stats(admin: schemas.User = Depends(require_admin), store: Store = Depends(get_store)):
    return await store.stats()


@api.post("/admin/cleanup")
async def admin_cleanup(
    request: Request,
    admin: schemas.User = Depends(require_admin),
    store: Store = Depends(get_store),
):
    settings = request.app.state.settings
    logger.warning("Database cleanup triggered by %s", admin.username)
    await store.wipe_accounts()
    await store.ensure_admin(settings.admin_username, hash_password(settings.admin_password, settings.bcrypt_rounds))
    return {"message": "Database cleaned"}


# Error handlers
def _describe(errors) -> str:
    parts = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
        msg = err.get("msg", "Invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "Invalid request"


async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)}, headers=exc.headers)


async def validation_error_handler(request: Request, exc):
    return JSONResponse(status_code=400, content={"message": _describe(exc.errors())})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


# App
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store: Store = app.state.store
        if await store.init():
            await store.ensure_admin(
                settings.admin_username,
                hash_password(settings.admin_password, settings.bcrypt_rounds),
            )
        app.state.uploads.init()
        yield
        await store.close()

    app = FastAPI(title="Bazaar API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = Store(
        settings.database_url,
        connect_retries=settings.db_connect_retries,
        retry_delay=settings.db_retry_delay,
    )
    app.state.uploads = LocalUploads(
        settings.upload_dir,
        max_bytes=settings.max_upload_bytes,
        max_files=settings.max_upload_files,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(MarketplaceError, marketplace_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.get("/")
    def root():
        return {"status": "ok", "service": "bazaar-api"}

    app.include_router(api)
    app.mount(URL_PREFIX, StaticFiles(directory=settings.upload_dir, check_dir=False), name="uploads")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

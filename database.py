"""
Store client: connection lifecycle and every query the API runs.

A Store is built once per application (see main.create_app), opened with
init() at startup and closed with close() at shutdown. Handlers get it through
a dependency; there is no module-level connection.

Rows leave this module as schemas.* models, which is where legacy status
tokens are resolved into the moderation enums.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import models
import schemas
from errors import Conflict, InvalidTransition, NotFound
from moderation import (
    OrderStatus,
    ProductAction,
    ProductStatus,
    next_product_state,
    parse_product_status,
    stored_product_values,
)

logger = logging.getLogger(__name__)


class Store:
    def __init__(self, database_url: str, connect_retries: int = 2, retry_delay: float = 2.0):
        self.database_url = database_url
        self.connect_retries = connect_retries
        self.retry_delay = retry_delay
        self.engine = None
        self._sessions: Optional[async_sessionmaker] = None

    # Lifecycle

    async def init(self) -> bool:
        """Open the engine, probe it and create missing tables.

        Returns False when the database never answered; the app still starts
        so /health can report the outage.
        """
        kwargs = {}
        if self.database_url.startswith("sqlite") and ":memory:" in self.database_url:
            # one shared connection, otherwise every session sees a fresh empty db
            kwargs = {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
        self.engine = create_async_engine(self.database_url, **kwargs)
        self._sessions = async_sessionmaker(self.engine, expire_on_commit=False)

        try:
            await self.verify_connection()
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Startup database check failed: %s", exc)
            return False

        async with self.engine.begin() as conn:
            await conn.run_sync(models.Base.metadata.create_all)
        logger.info("Database ready")
        return True

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None

    async def ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("select 1"))

    async def verify_connection(self) -> None:
        attempts = self.connect_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await self.ping()
                return
            except (SQLAlchemyError, OSError) as exc:
                if attempt == attempts:
                    raise
                logger.warning(
                    "Database check failed (attempt %d/%d): %s. Retrying in %.1fs",
                    attempt, attempts, exc, self.retry_delay,
                )
                await asyncio.sleep(self.retry_delay)

    @asynccontextmanager
    async def session(self):
        async with self._sessions() as session:
            yield session

    # Helpers

    async def _get_row(self, session: AsyncSession, model, row_id: int, label: str):
        row = await session.get(model, row_id)
        if row is None:
            raise NotFound(f"{label} not found")
        return row

    async def _insert(self, model, schema, **values):
        async with self.session() as session:
            row = model(**values)
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return schema.model_validate(row)

    async def _update(self, model, schema, row_id: int, label: str, changes: dict):
        async with self.session() as session:
            row = await self._get_row(session, model, row_id, label)
            for key, value in changes.items():
                setattr(row, key, value)
            await session.commit()
            await session.refresh(row)
            return schema.model_validate(row)

    async def _delete(self, model, row_id: int, label: str) -> None:
        async with self.session() as session:
            row = await self._get_row(session, model, row_id, label)
            await session.delete(row)
            await session.commit()

    async def _list(self, schema, stmt) -> list:
        async with self.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [schema.model_validate(r) for r in rows]

    async def _count(self, stmt) -> int:
        async with self.session() as session:
            return (await session.execute(stmt)).scalar_one()

    # Users

    async def get_user(self, user_id: int) -> Optional[schemas.User]:
        async with self.session() as session:
            row = await session.get(models.User, user_id)
            return schemas.User.model_validate(row) if row else None

    async def get_user_credentials(self, username: str) -> Optional[models.User]:
        async with self.session() as session:
            stmt = select(models.User).where(models.User.username == username)
            return (await session.execute(stmt)).scalar_one_or_none()

    async def create_user(self, username: str, password_hash: str, role: str = "customer",
                          is_admin: bool = False) -> schemas.User:
        try:
            return await self._insert(
                models.User, schemas.User,
                username=username, password_hash=password_hash, role=role, is_admin=is_admin,
            )
        except IntegrityError:
            raise Conflict("Username already taken")

    async def update_user(self, user_id: int, **changes) -> schemas.User:
        return await self._update(models.User, schemas.User, user_id, "User", changes)

    async def ensure_admin(self, username: str, password_hash: str) -> schemas.User:
        existing = await self.get_user_credentials(username)
        if existing is not None:
            if not existing.is_admin or existing.role != "admin":
                return await self.update_user(existing.id, role="admin", is_admin=True)
            return schemas.User.model_validate(existing)
        logger.info("Creating admin account %r", username)
        return await self.create_user(username, password_hash, role="admin", is_admin=True)

    # Shops

    async def list_shops(self, approved: Optional[bool] = None) -> List[schemas.Shop]:
        stmt = select(models.Shop).order_by(models.Shop.created_at, models.Shop.id)
        if approved is not None:
            stmt = stmt.where(models.Shop.approved.is_(approved))
        return await self._list(schemas.Shop, stmt)

    async def get_shop(self, shop_id: int) -> Optional[schemas.Shop]:
        async with self.session() as session:
            row = await session.get(models.Shop, shop_id)
            return schemas.Shop.model_validate(row) if row else None

    async def get_shop_by_owner(self, owner_id: int) -> Optional[schemas.Shop]:
        async with self.session() as session:
            stmt = (
                select(models.Shop)
                .where(models.Shop.owner_id == owner_id)
                .order_by(models.Shop.id)
                .limit(1)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return schemas.Shop.model_validate(row) if row else None

    async def create_shop(self, owner_id: int, fields: schemas.ShopFields) -> schemas.Shop:
        values = fields.model_dump(include=set(schemas.ShopFields.model_fields))
        return await self._insert(
            models.Shop, schemas.Shop,
            owner_id=owner_id, approved=True, is_verified=False, **values,
        )

    async def update_shop(self, shop_id: int, **changes) -> schemas.Shop:
        return await self._update(models.Shop, schemas.Shop, shop_id, "Shop", changes)

    # Products

    def _product_listing(self):
        return (
            select(
                models.Product,
                func.coalesce(models.User.shop_name, models.Shop.name).label("shop_name"),
                func.coalesce(models.User.shop_address, models.Shop.address).label("shop_address"),
                models.Shop.contact_number,
                models.Shop.mobile,
            )
            .outerjoin(models.User, models.User.id == models.Product.seller_id)
            .outerjoin(models.Shop, models.Shop.id == models.Product.shop_id)
        )

    @staticmethod
    def _with_seller(row) -> schemas.ProductWithSeller:
        product = schemas.Product.model_validate(row.Product)
        return schemas.ProductWithSeller(
            **product.model_dump(),
            shop_name=row.shop_name,
            shop_address=row.shop_address,
            contact_number=row.contact_number,
            mobile=row.mobile,
        )

    async def list_products_with_seller(self, shop_id: Optional[int] = None) -> List[schemas.ProductWithSeller]:
        """All products, creation time ascending (ties by id), joined with seller/shop contact."""
        stmt = self._product_listing().order_by(models.Product.created_at, models.Product.id)
        if shop_id is not None:
            stmt = stmt.where(models.Product.shop_id == shop_id)
        async with self.session() as session:
            rows = (await session.execute(stmt)).all()
            return [self._with_seller(r) for r in rows]

    async def get_product(self, product_id: int) -> Optional[schemas.Product]:
        async with self.session() as session:
            row = await session.get(models.Product, product_id)
            return schemas.Product.model_validate(row) if row else None

    async def get_product_with_seller(self, product_id: int) -> Optional[schemas.ProductWithSeller]:
        stmt = self._product_listing().where(models.Product.id == product_id)
        async with self.session() as session:
            row = (await session.execute(stmt)).first()
            return self._with_seller(row) if row else None

    async def create_product(self, shop_id: int, seller_id: int,
                             command: schemas.ProductCreate) -> schemas.Product:
        values = command.model_dump(exclude={"shop_id"})
        return await self._insert(
            models.Product, schemas.Product,
            shop_id=shop_id, seller_id=seller_id,
            approved=False, status=ProductStatus.PENDING.value,
            **values,
        )

    async def edit_product(self, product_id: int, changes: dict,
                           action: Optional[ProductAction] = None) -> schemas.Product:
        """Apply field edits and an optional moderation action in one commit.

        The action is a compare-and-set on the status column: the UPDATE only
        matches while the row still holds the status the transition was
        computed from, so a concurrent soft-delete cannot be undone by an
        approve or stock toggle that read the row earlier. When it misses,
        the field edits are rolled back with it.
        """
        # moderation columns only move through an action
        changes = {k: v for k, v in changes.items() if k not in ("approved", "status")}
        async with self.session() as session:
            row = await self._get_row(session, models.Product, product_id, "Product")
            for key, value in changes.items():
                setattr(row, key, value)
            await session.flush()

            if action is not None:
                current = parse_product_status(row.status)
                target = next_product_state(current, action)
                values = {"status": target.status.value}
                if target.approved is not None:
                    values["approved"] = target.approved
                result = await session.execute(
                    update(models.Product)
                    .where(
                        models.Product.id == product_id,
                        models.Product.status.in_(stored_product_values(current)),
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    await session.rollback()
                    raise InvalidTransition("Product changed while updating; reload and try again")
                logger.info("Product %s: %s -> %s (%s)", product_id, current.value, target.status.value, action.value)

            await session.commit()
            await session.refresh(row)
            return schemas.Product.model_validate(row)

    async def transition_product(self, product_id: int, action: ProductAction) -> schemas.Product:
        return await self.edit_product(product_id, {}, action)

    # Categories

    async def list_categories(self) -> List[schemas.Category]:
        return await self._list(schemas.Category, select(models.Category).order_by(models.Category.id))

    async def create_category(self, command: schemas.CategoryCreate) -> schemas.Category:
        try:
            return await self._insert(models.Category, schemas.Category, **command.model_dump())
        except IntegrityError:
            raise Conflict(f"Category {command.name!r} already exists")

    async def update_category(self, category_id: int, changes: dict) -> schemas.Category:
        try:
            return await self._update(models.Category, schemas.Category, category_id, "Category", changes)
        except IntegrityError:
            raise Conflict(f"Category {changes.get('name')!r} already exists")

    async def delete_category(self, category_id: int) -> None:
        await self._delete(models.Category, category_id, "Category")

    # Offers

    async def list_offers(self, active_only: bool = False) -> List[schemas.Offer]:
        stmt = select(models.Offer).order_by(models.Offer.created_at, models.Offer.id)
        if active_only:
            stmt = stmt.where(models.Offer.is_active.is_(True))
        return await self._list(schemas.Offer, stmt)

    async def create_offer(self, user_id: int, command: schemas.OfferCreate) -> schemas.Offer:
        return await self._insert(models.Offer, schemas.Offer, user_id=user_id, **command.model_dump())

    async def update_offer(self, offer_id: int, changes: dict) -> schemas.Offer:
        return await self._update(models.Offer, schemas.Offer, offer_id, "Offer", changes)

    async def delete_offer(self, offer_id: int) -> None:
        await self._delete(models.Offer, offer_id, "Offer")

    # Banners

    async def list_banners(self) -> List[schemas.Banner]:
        stmt = select(models.Banner).order_by(models.Banner.created_at, models.Banner.id)
        return await self._list(schemas.Banner, stmt)

    async def get_banner(self, banner_id: int) -> Optional[schemas.Banner]:
        async with self.session() as session:
            row = await session.get(models.Banner, banner_id)
            return schemas.Banner.model_validate(row) if row else None

    async def create_banner(self, command: schemas.BannerCreate) -> schemas.Banner:
        return await self._insert(models.Banner, schemas.Banner, **command.model_dump())

    async def update_banner(self, banner_id: int, changes: dict) -> schemas.Banner:
        return await self._update(models.Banner, schemas.Banner, banner_id, "Banner", changes)

    async def delete_banner(self, banner_id: int) -> None:
        await self._delete(models.Banner, banner_id, "Banner")

    # Orders

    async def create_order(self, command: schemas.OrderCreate, status: OrderStatus) -> schemas.Order:
        values = command.model_dump()
        if command.payment_method is not None:
            values["payment_method"] = command.payment_method.value
        return await self._insert(models.Order, schemas.Order, status=status.value, **values)

    async def get_order(self, order_id: int) -> Optional[schemas.Order]:
        async with self.session() as session:
            row = await session.get(models.Order, order_id)
            return schemas.Order.model_validate(row) if row else None

    async def list_orders(self, phone: Optional[str] = None, shop_id: Optional[int] = None) -> List[schemas.Order]:
        stmt = select(models.Order).order_by(models.Order.created_at, models.Order.id)
        if phone is not None:
            stmt = stmt.where(models.Order.customer_phone == phone)
        if shop_id is not None:
            stmt = stmt.where(models.Order.shop_id == shop_id)
        return await self._list(schemas.Order, stmt)

    async def update_order_status(self, order_id: int, status: OrderStatus) -> schemas.Order:
        return await self._update(models.Order, schemas.Order, order_id, "Order", {"status": status.value})

    # Reviews

    async def create_review(self, product_id: int, command: schemas.ReviewCreate) -> schemas.Review:
        return await self._insert(
            models.Review, schemas.Review,
            product_id=product_id, is_approved=False, **command.model_dump(),
        )

    async def list_reviews(self, product_id: int, approved_only: bool = True) -> List[schemas.Review]:
        stmt = (
            select(models.Review)
            .where(models.Review.product_id == product_id)
            .order_by(models.Review.created_at, models.Review.id)
        )
        if approved_only:
            stmt = stmt.where(models.Review.is_approved.is_(True))
        return await self._list(schemas.Review, stmt)

    async def approve_review(self, review_id: int) -> schemas.Review:
        return await self._update(models.Review, schemas.Review, review_id, "Review", {"is_approved": True})

    # Cart

    async def list_cart(self, user_id: int) -> List[schemas.CartItem]:
        stmt = (
            select(models.CartItem)
            .where(models.CartItem.user_id == user_id)
            .order_by(models.CartItem.id)
        )
        return await self._list(schemas.CartItem, stmt)

    async def add_to_cart(self, user_id: int, command: schemas.CartItemCreate) -> schemas.CartItem:
        async with self.session() as session:
            stmt = select(models.CartItem).where(
                models.CartItem.user_id == user_id,
                models.CartItem.product_id == command.product_id,
            )
            item = (await session.execute(stmt)).scalars().first()
            if item is None:
                item = models.CartItem(user_id=user_id, product_id=command.product_id, quantity=command.quantity)
                session.add(item)
            else:
                item.quantity += command.quantity
            await session.commit()
            await session.refresh(item)
            return schemas.CartItem.model_validate(item)

    async def remove_from_cart(self, user_id: int, item_id: int) -> None:
        async with self.session() as session:
            item = await session.get(models.CartItem, item_id)
            if item is None or item.user_id != user_id:
                raise NotFound("Cart item not found")
            await session.delete(item)
            await session.commit()

    # Admin

    async def stats(self) -> schemas.AdminStats:
        pending = select(func.count()).select_from(models.Product).where(
            models.Product.status == ProductStatus.PENDING.value
        )
        return schemas.AdminStats(
            users=await self._count(select(func.count()).select_from(models.User)),
            shops=await self._count(select(func.count()).select_from(models.Shop)),
            products=await self._count(select(func.count()).select_from(models.Product)),
            pending_products=await self._count(pending),
            orders=await self._count(select(func.count()).select_from(models.Order)),
        )

    async def wipe_accounts(self) -> None:
        """Delete every product, shop and user. Orders and content are kept."""
        async with self.session() as session:
            await session.execute(delete(models.Product))
            await session.execute(delete(models.Shop))
            await session.execute(delete(models.User))
            await session.commit()
        logger.warning("Products, shops and users wiped")

"""
Relational tables for the marketplace.

Product.category is a plain string, not a foreign key to Category: renaming a
category does not touch existing products. Orders reference products and
shops loosely, without constraints, so orphaned orders are tolerated.
"""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String(150), unique=True, nullable=False)
    password_hash = Column(String(200), nullable=False)
    role = Column(String(20), nullable=False, default="customer")
    is_admin = Column(Boolean, nullable=False, default=False)
    shop_name = Column(String(200))
    shop_address = Column(Text)
    maps_link = Column(Text)


class Shop(Base):
    __tablename__ = "shops"

    id = Column(Integer, primary_key=True)
    owner_id = Column(Integer, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    category = Column(String(100), nullable=False)
    description = Column(Text)
    address = Column(Text)
    phone = Column(String(30), nullable=False)
    mobile = Column(String(30), nullable=False)
    contact_number = Column(String(30))
    image = Column(Text)
    rating = Column(Float, default=0)
    review_count = Column(Integer, default=0)
    avg_rating = Column(Float, default=0)
    is_featured = Column(Boolean, default=False)
    approved = Column(Boolean, nullable=False, default=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    shop_id = Column(Integer, nullable=False, index=True)
    seller_id = Column(Integer, nullable=False)
    name = Column(String(200), nullable=False)
    price = Column(String(32), nullable=False)  # decimal kept as text
    image_url = Column(Text)
    category = Column(String(100), nullable=False)
    description = Column(Text)
    approved = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default="pending")
    created_at = Column(DateTime, default=datetime.utcnow)


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), unique=True, nullable=False)
    image_url = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)


class Offer(Base):
    __tablename__ = "offers"

    id = Column(Integer, primary_key=True)
    content = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    user_id = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)


class Banner(Base):
    __tablename__ = "banners"

    id = Column(Integer, primary_key=True)
    image = Column(Text, nullable=False)
    title = Column(String(200), default="")
    link = Column(Text, default="/")
    created_at = Column(DateTime, default=datetime.utcnow)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, nullable=False)
    shop_id = Column(Integer, nullable=False, index=True)
    customer_name = Column(String(200), nullable=False)
    customer_phone = Column(String(30), nullable=False, index=True)
    customer_address = Column(Text, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    total_price = Column(String(32), nullable=False)
    status = Column(String(40), nullable=False, default="pending")
    payment_method = Column(String(10))
    created_at = Column(DateTime, default=datetime.utcnow)


class Review(Base):
    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, nullable=False, index=True)
    customer_name = Column(String(200), nullable=False)
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=False)
    is_approved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    product_id = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)

"""
商品目录数据模型（权威数据源，只读映射）
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import Boolean, Integer, Text, ForeignKey, Index, func
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, NUMERIC
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Category(Base):
    """商品类目表"""
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, comment="类目名称")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())


class Supplier(Base):
    """供应商表"""
    __tablename__ = "suppliers"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, comment="供应商名称")
    contact_person: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_terms: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    lead_time_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, comment="交货周期（天）")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())


class Product(Base):
    """商品表"""
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sku: Mapped[str] = mapped_column(Text, nullable=False)
    barcode: Mapped[str] = mapped_column(Text, nullable=False)
    category_id: Mapped[Optional[str]] = mapped_column(
        Text, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True
    )
    supplier_id: Mapped[Optional[str]] = mapped_column(
        Text, ForeignKey("suppliers.id", ondelete="SET NULL"), nullable=True
    )

    # 价格（必须使用 Decimal）
    cost_price: Mapped[Decimal] = mapped_column(NUMERIC(12, 2), nullable=False, comment="成本价")
    selling_price: Mapped[Decimal] = mapped_column(NUMERIC(12, 2), nullable=False, comment="售价")

    tags: Mapped[Optional[List[str]]] = mapped_column(ARRAY(Text), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    has_variants: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    low_stock_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True, comment="上传服务生成的公开图片 URL")

    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_products_category", "category_id"),
        Index("ix_products_supplier", "supplier_id"),
    )


class ProductVariant(Base):
    """商品变体表"""
    __tablename__ = "product_variants"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    product_id: Mapped[str] = mapped_column(
        Text, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    sku: Mapped[str] = mapped_column(Text, nullable=False)
    option_values: Mapped[Dict[str, str]] = mapped_column(JSONB, nullable=False, default=dict, comment="属性名 -> 属性值")

    __table_args__ = (
        Index("ix_product_variants_product", "product_id"),
    )

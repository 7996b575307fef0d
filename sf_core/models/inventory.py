"""
门店库存数据模型（权威数据源，只读映射）
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import Integer, Text, ForeignKey, CheckConstraint, UniqueConstraint, Index, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Location(Base):
    """门店/仓位表"""
    __tablename__ = "locations"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class InventoryItem(Base):
    """库存表（商品 + 变体 + 门店）"""
    __tablename__ = "inventory"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    product_id: Mapped[str] = mapped_column(
        Text, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    variant_id: Mapped[Optional[str]] = mapped_column(
        Text, ForeignKey("product_variants.id", ondelete="CASCADE"), nullable=True
    )
    location_id: Mapped[str] = mapped_column(
        Text, ForeignKey("locations.id", ondelete="CASCADE"), nullable=False
    )

    quantity: Mapped[int] = mapped_column(Integer, CheckConstraint("quantity >= 0"), nullable=False, default=0)
    # 并发预留窗口内可能短暂大于 quantity
    reserved_quantity: Mapped[int] = mapped_column(
        Integer, CheckConstraint("reserved_quantity >= 0"), nullable=False, default=0
    )
    reorder_point: Mapped[int] = mapped_column(
        Integer, CheckConstraint("reorder_point >= 0"), nullable=False, default=0
    )

    updated_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("product_id", "variant_id", "location_id", name="uq_inventory_product_variant_location"),
        Index("ix_inventory_location", "location_id"),
        Index("ix_inventory_product", "product_id"),
    )

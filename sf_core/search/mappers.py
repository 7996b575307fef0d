"""
索引记录映射器

负责将权威实体（+ 引用实体）转换为索引记录字典：
- Decimal -> float
- datetime -> ISO8601 (UTC, Z 结尾)
- 标签集合 -> 排序列表
- 库存派生字段交给 StockAvailabilityResolver
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from sf_core.utils.errors import SchemaViolation

from .stock import StockAvailability, StockAvailabilityResolver


def to_wire_timestamp(value: Any) -> Optional[str]:
    """时间戳统一为 UTC ISO8601 字符串"""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    return str(value)


def to_wire_number(value: Any) -> Any:
    """Decimal 金额转为 float，其他原样返回交给 schema 校验"""
    if isinstance(value, Decimal):
        return float(value)
    return value


def _optional_str(value: Any) -> Optional[str]:
    # 空字符串与 None 同样视为缺失
    if value is None or value == "":
        return None
    return str(value)


def _name_of(entity: Optional[Dict[str, Any]]) -> Optional[str]:
    if not entity:
        return None
    return _optional_str(entity.get("name"))


class RecordMapper:
    """权威实体 -> 索引记录"""

    def __init__(self, resolver: Optional[StockAvailabilityResolver] = None):
        self.resolver = resolver or StockAvailabilityResolver()

    def product_record(
        self,
        product: Dict[str, Any],
        category: Optional[Dict[str, Any]] = None,
        supplier: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """商品记录（类目/供应商名称反规范化）"""
        tags = product.get("tags")
        if tags is not None:
            tags = sorted(set(tags))

        return {
            "objectID": str(product.get("id")),
            "name": product.get("name"),
            "description": _optional_str(product.get("description")),
            "sku": product.get("sku"),
            "barcode": product.get("barcode"),
            "category_id": _optional_str(product.get("category_id")),
            "category_name": _name_of(category) if product.get("category_id") else None,
            "supplier_id": _optional_str(product.get("supplier_id")),
            "supplier_name": _name_of(supplier) if product.get("supplier_id") else None,
            "cost_price": to_wire_number(product.get("cost_price")),
            "selling_price": to_wire_number(product.get("selling_price")),
            "tags": tags or None,
            "is_active": product.get("is_active"),
            "has_variants": product.get("has_variants"),
            "image_url": _optional_str(product.get("image_url")),
            "created_at": to_wire_timestamp(product.get("created_at")),
            "updated_at": to_wire_timestamp(product.get("updated_at")),
        }

    def customer_record(self, customer: Dict[str, Any]) -> Dict[str, Any]:
        """顾客记录（full_name 派生）"""
        first_name = customer.get("first_name")
        last_name = customer.get("last_name")
        return {
            "objectID": str(customer.get("id")),
            "first_name": first_name,
            "last_name": last_name,
            "full_name": f"{first_name} {last_name}" if first_name is not None and last_name is not None else None,
            "email": _optional_str(customer.get("email")),
            "phone": _optional_str(customer.get("phone")),
            "city": _optional_str(customer.get("city")),
            "total_orders": customer.get("total_orders"),
            "total_spent": to_wire_number(customer.get("total_spent")),
            "loyalty_points": customer.get("loyalty_points"),
            "is_active": customer.get("is_active"),
            "created_at": to_wire_timestamp(customer.get("created_at")),
        }

    def supplier_record(self, supplier: Dict[str, Any]) -> Dict[str, Any]:
        """供应商记录"""
        return {
            "objectID": str(supplier.get("id")),
            "name": supplier.get("name"),
            "contact_person": _optional_str(supplier.get("contact_person")),
            "email": _optional_str(supplier.get("email")),
            "phone": _optional_str(supplier.get("phone")),
            "address": _optional_str(supplier.get("address")),
            "payment_terms": _optional_str(supplier.get("payment_terms")),
            "lead_time_days": supplier.get("lead_time_days"),
            "is_active": supplier.get("is_active"),
            "created_at": to_wire_timestamp(supplier.get("created_at")),
        }

    def inventory_record(
        self,
        item: Dict[str, Any],
        product: Optional[Dict[str, Any]] = None,
        variant: Optional[Dict[str, Any]] = None,
        location: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], StockAvailability]:
        """
        门店库存记录

        Returns:
            (record, stock) 元组，stock 供调用方做超卖上报

        Raises:
            SchemaViolation: 数量字段不是非负整数
        """
        for key in ("id", "product_id", "location_id"):
            if not item.get(key):
                raise SchemaViolation("inventory", f"{key} is required", object_id=_optional_str(item.get("id")))

        stock = self.resolver.resolve(
            item.get("quantity"),
            item.get("reserved_quantity"),
            item.get("reorder_point"),
        )

        product = product or {}
        variant_id = _optional_str(item.get("variant_id"))
        variant = variant or {}

        record = {
            "objectID": str(item.get("id")),
            "product_id": str(item.get("product_id")),
            "product_name": product.get("name") or "",
            "product_sku": product.get("sku") or "",
            "product_barcode": product.get("barcode") or "",
            "variant_id": variant_id,
            "variant_sku": _optional_str(variant.get("sku")) if variant_id else None,
            "variant_options": (variant.get("option_values") or None) if variant_id else None,
            "location_id": str(item.get("location_id")),
            "location_name": (location or {}).get("name") or "",
            "quantity": stock.quantity,
            "reserved_quantity": stock.reserved_quantity,
            "reorder_point": stock.reorder_point,
            "available": stock.available,
            "is_low_stock": stock.is_low_stock,
        }
        return record, stock

"""
索引 Schema 注册表

四个反规范化索引集合（products / customers / suppliers / inventory）的记录形状。
- 投影器发布前用它校验记录
- 查询网关用它校验并反序列化命中结果

字段名即线上格式，必须与索引存储中的字段逐字一致
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Annotated, Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Type

from pydantic import (
    BaseModel, BeforeValidator, ConfigDict, Field,
    StrictBool, StrictInt, StrictStr,
    ValidationError as PydanticValidationError,
    field_validator, model_validator,
)

from sf_core.utils.errors import SchemaViolation


def _number(value: Any) -> float:
    # bool 是 int 的子类，需要单独排除
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise ValueError(f"must be a number, got {type(value).__name__}")
    return float(value)


def _money(value: Any) -> float:
    value = _number(value)
    if value < 0:
        raise ValueError("must be >= 0")
    return value


Money = Annotated[float, BeforeValidator(_money)]
Amount = Annotated[float, BeforeValidator(_number)]
Count = Annotated[StrictInt, Field(ge=0)]
ObjectID = Annotated[StrictStr, Field(min_length=1)]


def facet_value(value: Any) -> str:
    """facet 值统一为字符串（布尔值为 true/false）"""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class IndexRecord(BaseModel):
    """索引记录基类"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    objectID: ObjectID

    def to_wire(self) -> Dict[str, Any]:
        """线上格式：省略空的可选字段"""
        return self.model_dump(exclude_none=True)


class ProductRecord(IndexRecord):
    """商品索引记录"""
    name: StrictStr
    description: Optional[StrictStr] = None
    sku: StrictStr
    barcode: StrictStr
    category_id: Optional[StrictStr] = None
    category_name: Optional[StrictStr] = None
    supplier_id: Optional[StrictStr] = None
    supplier_name: Optional[StrictStr] = None
    cost_price: Money
    selling_price: Money
    tags: Optional[List[StrictStr]] = None
    is_active: StrictBool
    has_variants: StrictBool
    image_url: Optional[StrictStr] = None
    created_at: StrictStr
    updated_at: StrictStr

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v):
        """标签是集合语义：去重并排序"""
        if v is None:
            return v
        return sorted(set(v))


class CustomerRecord(IndexRecord):
    """顾客索引记录"""
    first_name: StrictStr
    last_name: StrictStr
    full_name: StrictStr
    email: Optional[StrictStr] = None
    phone: Optional[StrictStr] = None
    city: Optional[StrictStr] = None
    total_orders: Count
    total_spent: Amount
    loyalty_points: Count
    is_active: StrictBool
    created_at: StrictStr


class SupplierRecord(IndexRecord):
    """供应商索引记录"""
    name: StrictStr
    contact_person: Optional[StrictStr] = None
    email: Optional[StrictStr] = None
    phone: Optional[StrictStr] = None
    address: Optional[StrictStr] = None
    payment_terms: Optional[StrictStr] = None
    lead_time_days: Optional[Count] = None
    is_active: StrictBool
    created_at: StrictStr


class InventoryRecord(IndexRecord):
    """门店库存索引记录"""
    product_id: StrictStr
    product_name: StrictStr
    product_sku: StrictStr
    product_barcode: StrictStr
    variant_id: Optional[StrictStr] = None
    variant_sku: Optional[StrictStr] = None
    variant_options: Optional[Dict[StrictStr, StrictStr]] = None
    location_id: StrictStr
    location_name: StrictStr
    quantity: Count
    reserved_quantity: Count
    reorder_point: Count
    # 派生字段，由 StockAvailabilityResolver 计算
    available: StrictInt
    is_low_stock: StrictBool

    @model_validator(mode="after")
    def check_derived_stock(self):
        """派生字段必须与原始数量一致"""
        if self.available != self.quantity - self.reserved_quantity:
            raise ValueError(
                f"available={self.available} does not equal quantity - reserved_quantity "
                f"({self.quantity} - {self.reserved_quantity})"
            )
        if self.is_low_stock != (self.quantity <= self.reorder_point):
            raise ValueError(
                f"is_low_stock={self.is_low_stock} contradicts quantity={self.quantity}, "
                f"reorder_point={self.reorder_point}"
            )
        return self


@dataclass(frozen=True)
class IndexSchema:
    """单个索引集合的 schema 与索引设置"""
    name: str
    model: Type[IndexRecord]
    searchable_attributes: Tuple[str, ...]
    facet_attributes: Tuple[str, ...]
    # 返回计数但不支持 facet 值搜索的属性
    plain_facet_attributes: FrozenSet[str] = frozenset()
    custom_ranking: Tuple[str, ...] = ()
    derived_fields: Tuple[str, ...] = ()
    extra_settings: Dict[str, Any] = field(default_factory=dict)

    @property
    def fields(self) -> Tuple[str, ...]:
        return tuple(self.model.model_fields)

    @property
    def required_fields(self) -> Tuple[str, ...]:
        return tuple(name for name, f in self.model.model_fields.items() if f.is_required())

    @property
    def optional_fields(self) -> Tuple[str, ...]:
        return tuple(name for name, f in self.model.model_fields.items() if not f.is_required())

    def index_settings(self) -> Dict[str, Any]:
        """索引存储设置（Algolia settings 格式）"""
        faceting = []
        for attribute in self.facet_attributes:
            if attribute in self.plain_facet_attributes:
                faceting.append(attribute)
            else:
                faceting.append(f"searchable({attribute})")

        settings = {
            "searchableAttributes": list(self.searchable_attributes),
            "attributesForFaceting": faceting,
            "customRanking": list(self.custom_ranking),
        }
        settings.update(self.extra_settings)
        return settings


PRODUCTS_SCHEMA = IndexSchema(
    name="products",
    model=ProductRecord,
    searchable_attributes=(
        "name", "sku", "barcode", "description", "category_name", "supplier_name", "tags",
    ),
    facet_attributes=(
        "category_id", "supplier_id", "is_active", "has_variants", "category_name", "tags",
    ),
    plain_facet_attributes=frozenset({"category_id", "supplier_id", "is_active", "has_variants"}),
    custom_ranking=("desc(updated_at)",),
    extra_settings={
        "typoTolerance": True,
        "minWordSizefor1Typo": 3,
        "minWordSizefor2Typos": 6,
    },
)

CUSTOMERS_SCHEMA = IndexSchema(
    name="customers",
    model=CustomerRecord,
    searchable_attributes=("full_name", "first_name", "last_name", "phone", "email", "city"),
    facet_attributes=("is_active", "city"),
    plain_facet_attributes=frozenset({"is_active"}),
    custom_ranking=("desc(total_spent)", "desc(total_orders)"),
    derived_fields=("full_name",),
)

SUPPLIERS_SCHEMA = IndexSchema(
    name="suppliers",
    model=SupplierRecord,
    searchable_attributes=("name", "contact_person", "email", "phone", "address"),
    facet_attributes=("is_active",),
    plain_facet_attributes=frozenset({"is_active"}),
    custom_ranking=("asc(name)",),
)

INVENTORY_SCHEMA = IndexSchema(
    name="inventory",
    model=InventoryRecord,
    searchable_attributes=(
        "product_name", "product_sku", "product_barcode", "variant_sku", "location_name",
    ),
    facet_attributes=("location_id", "product_id", "is_low_stock"),
    plain_facet_attributes=frozenset({"location_id", "product_id", "is_low_stock"}),
    custom_ranking=("asc(quantity)",),
    derived_fields=("available", "is_low_stock"),
)

DEFAULT_SCHEMAS = (PRODUCTS_SCHEMA, CUSTOMERS_SCHEMA, SUPPLIERS_SCHEMA, INVENTORY_SCHEMA)


def _format_validation_error(error: PydanticValidationError) -> str:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "<record>"
        messages.append(f"{location}: {item.get('msg')}")
    return "; ".join(messages)


class IndexSchemaRegistry:
    """索引 Schema 注册表（纯静态，无副作用）"""

    def __init__(self, schemas: Iterable[IndexSchema] = DEFAULT_SCHEMAS):
        self._schemas: Dict[str, IndexSchema] = {schema.name: schema for schema in schemas}

    def names(self) -> List[str]:
        return list(self._schemas)

    def has_index(self, name: str) -> bool:
        return name in self._schemas

    def get_schema(self, name: str) -> IndexSchema:
        """
        获取索引 schema

        Raises:
            SchemaViolation: 未知索引
        """
        schema = self._schemas.get(name)
        if schema is None:
            raise SchemaViolation(name, f"unknown index '{name}'")
        return schema

    def is_facet_attribute(self, name: str, attribute: str) -> bool:
        schema = self._schemas.get(name)
        return schema is not None and attribute in schema.facet_attributes

    def validate(self, name: str, data: Dict[str, Any]) -> IndexRecord:
        """
        校验记录

        Raises:
            SchemaViolation: 缺少必填字段或字段类型不符
        """
        schema = self.get_schema(name)
        try:
            return schema.model.model_validate(data)
        except PydanticValidationError as e:
            raise SchemaViolation(
                name,
                _format_validation_error(e),
                object_id=data.get("objectID") if isinstance(data, dict) else None,
            ) from e

    def validate_hit(self, name: str, hit: Dict[str, Any]) -> IndexRecord:
        """校验命中结果，去掉存储附加的 _highlightResult 等元字段"""
        cleaned = {key: value for key, value in hit.items() if not key.startswith("_")}
        return self.validate(name, cleaned)


_registry: Optional[IndexSchemaRegistry] = None


def get_schema_registry() -> IndexSchemaRegistry:
    """获取默认注册表单例"""
    global _registry
    if _registry is None:
        _registry = IndexSchemaRegistry()
    return _registry

"""
实体变更事件与索引操作

变更事件由权威数据源协作方产生（轮询/触发器/消息流均可），
形状固定为 {entity_kind, entity_id, change_type, payload?}
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sf_core.utils.errors import InvalidArgument


class EntityKind(str, Enum):
    """实体类型"""
    PRODUCT = "product"
    CUSTOMER = "customer"
    SUPPLIER = "supplier"
    INVENTORY = "inventory"
    # 仅作为反规范化引用，自身没有索引集合
    CATEGORY = "category"
    LOCATION = "location"
    VARIANT = "variant"


class ChangeType(str, Enum):
    """变更类型"""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationType(str, Enum):
    """索引存储操作类型"""
    UPSERT = "upsert"
    DELETE = "delete"


# 实体类型 -> 索引集合
COLLECTION_BY_KIND: Dict[EntityKind, str] = {
    EntityKind.PRODUCT: "products",
    EntityKind.CUSTOMER: "customers",
    EntityKind.SUPPLIER: "suppliers",
    EntityKind.INVENTORY: "inventory",
}

# 被其他记录反规范化引用的实体类型（变更时需要级联重投影）
REFERENCED_KINDS = frozenset({
    EntityKind.CATEGORY,
    EntityKind.SUPPLIER,
    EntityKind.PRODUCT,
    EntityKind.VARIANT,
    EntityKind.LOCATION,
})


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ChangeEvent:
    """实体变更事件"""
    entity_kind: EntityKind
    entity_id: str
    change_type: ChangeType
    payload: Optional[Dict[str, Any]] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ts: str = field(default_factory=_utcnow_iso)

    @property
    def is_tombstone(self) -> bool:
        return self.change_type == ChangeType.DELETE

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典（线上传输格式）"""
        return {
            "event_id": self.event_id,
            "ts": self.ts,
            "entity_kind": self.entity_kind.value,
            "entity_id": self.entity_id,
            "change_type": self.change_type.value,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeEvent":
        """从字典创建，字段不合法时抛出 InvalidArgument"""
        try:
            kind = EntityKind(data["entity_kind"])
            change_type = ChangeType(data["change_type"])
        except KeyError as e:
            raise InvalidArgument(f"change event missing field {e.args[0]}") from e
        except ValueError as e:
            raise InvalidArgument(f"invalid change event: {e}") from e

        entity_id = data.get("entity_id")
        if entity_id is None or str(entity_id) == "":
            raise InvalidArgument("change event missing entity_id")

        payload = data.get("payload")
        if payload is not None and not isinstance(payload, dict):
            raise InvalidArgument("change event payload must be an object")

        extra = {}
        if data.get("event_id"):
            extra["event_id"] = data["event_id"]
        if data.get("ts"):
            extra["ts"] = data["ts"]

        return cls(
            entity_kind=kind,
            entity_id=str(entity_id),
            change_type=change_type,
            payload=payload,
            **extra
        )


@dataclass(frozen=True)
class IndexOperation:
    """发往索引存储的单个操作"""
    op: OperationType
    collection: str
    object_id: str
    record: Optional[Dict[str, Any]] = None

    @property
    def key(self) -> tuple:
        """同一 key 的操作必须按提交顺序串行执行"""
        return (self.collection, self.object_id)

    @classmethod
    def upsert(cls, collection: str, object_id: str, record: Dict[str, Any]) -> "IndexOperation":
        return cls(OperationType.UPSERT, collection, object_id, record)

    @classmethod
    def delete(cls, collection: str, object_id: str) -> "IndexOperation":
        return cls(OperationType.DELETE, collection, object_id)

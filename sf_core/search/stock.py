"""
库存可用性计算器

低库存标志的唯一权威来源：
- available = quantity - reserved_quantity（可为负，表示超卖，不做截断）
- is_low_stock = quantity <= reorder_point（与预留数量无关）

纯函数，无 I/O，不挂起
"""
from dataclasses import dataclass
from typing import Any, Dict

from sf_core.utils.errors import SchemaViolation


def _require_non_negative_int(name: str, value: Any) -> int:
    # bool 是 int 的子类，需要单独排除
    if isinstance(value, bool) or not isinstance(value, int):
        raise SchemaViolation("inventory", f"{name} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise SchemaViolation("inventory", f"{name} must be >= 0, got {value}")
    return value


@dataclass(frozen=True)
class StockAvailability:
    """派生库存状态"""
    quantity: int
    reserved_quantity: int
    reorder_point: int
    available: int
    is_low_stock: bool

    @property
    def is_oversold(self) -> bool:
        """预留数量暂时超过在库数量（并发预留窗口）"""
        return self.available < 0

    def can_fulfil(self, requested: int) -> bool:
        """实时扣减检查：请求数量是否可由可用库存满足"""
        _require_non_negative_int("requested", requested)
        return requested <= self.available

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quantity": self.quantity,
            "reserved_quantity": self.reserved_quantity,
            "reorder_point": self.reorder_point,
            "available": self.available,
            "is_low_stock": self.is_low_stock,
            "is_oversold": self.is_oversold,
        }


class StockAvailabilityResolver:
    """库存可用性计算器"""

    def resolve(self, quantity: int, reserved_quantity: int, reorder_point: int) -> StockAvailability:
        """
        计算派生库存字段

        Args:
            quantity: 在库数量
            reserved_quantity: 预留数量
            reorder_point: 补货点

        Returns:
            StockAvailability

        Raises:
            SchemaViolation: 输入不是非负整数
        """
        quantity = _require_non_negative_int("quantity", quantity)
        reserved_quantity = _require_non_negative_int("reserved_quantity", reserved_quantity)
        reorder_point = _require_non_negative_int("reorder_point", reorder_point)

        return StockAvailability(
            quantity=quantity,
            reserved_quantity=reserved_quantity,
            reorder_point=reorder_point,
            available=quantity - reserved_quantity,
            is_low_stock=quantity <= reorder_point,
        )

    def check_live(
        self,
        quantity: int,
        reserved_quantity: int,
        reorder_point: int,
        requested: int,
    ) -> Dict[str, Any]:
        """
        基于权威数据源实时数字的扣减检查（不等待索引传播）

        用于收银台等无法接受索引最终一致性延迟的场景
        """
        stock = self.resolve(quantity, reserved_quantity, reorder_point)
        result = stock.to_dict()
        result["requested"] = requested
        result["can_fulfil"] = stock.can_fulfil(requested)
        if not result["can_fulfil"]:
            result["reason"] = f"Insufficient stock (need {requested}, available {stock.available})"
        return result


_resolver = StockAvailabilityResolver()


def resolve_stock(quantity: int, reserved_quantity: int, reorder_point: int) -> StockAvailability:
    """模块级快捷方式"""
    return _resolver.resolve(quantity, reserved_quantity, reorder_point)


def check_live_availability(
    quantity: int,
    reserved_quantity: int,
    reorder_point: int,
    requested: int,
) -> Dict[str, Any]:
    """模块级快捷方式"""
    return _resolver.check_live(quantity, reserved_quantity, reorder_point, requested)

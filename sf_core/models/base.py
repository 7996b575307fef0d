"""
ShelfFlow 数据库基础模型
权威数据源的只读映射：UTC 时间、Decimal 金额
"""
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """数据库模型基类"""

    # 统一类型映射
    type_annotation_map = {
        datetime: DateTime(timezone=True),  # 强制使用 timezone-aware datetime
    }

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典（Decimal/datetime 保持原类型，由投影器序列化）"""
        return {
            column.name: getattr(self, column.name)
            for column in self.__table__.columns
        }

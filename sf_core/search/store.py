"""
索引存储协议与内存实现

协议是本层唯一要求字段名逐字一致的线上边界：
- upsert(collection, objectID, record)
- delete(collection, objectID)
- query(collection, text, refinements, filters, page, page_size, facets) -> 命中 + 计数

InMemoryIndexStore 用于测试与本地开发，语义与 Algolia 对齐：
- 整条记录替换，读者看不到部分字段更新
- 同一 attribute 内多个值 OR，不同 attribute 之间 AND
- facet 计数采用 disjunctive 方式（计算某 attribute 的计数时不应用它自己的 refinement）
"""
import copy
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from .schema import facet_value


Refinements = Mapping[str, Iterable[Any]]


@dataclass
class StoreQueryResult:
    """索引存储查询结果"""
    hits: List[Dict[str, Any]]
    total_hits: int
    facets: Dict[str, Dict[str, int]] = field(default_factory=dict)
    processing_ms: Optional[int] = None

    def total_pages(self, page_size: int) -> int:
        if page_size <= 0:
            return 0
        return math.ceil(self.total_hits / page_size)


class IndexStore(Protocol):
    """索引存储协议"""

    async def upsert(self, collection: str, object_id: str, record: Dict[str, Any]) -> None:
        """写入整条记录，返回即表示存储已确认"""
        ...

    async def delete(self, collection: str, object_id: str) -> None:
        """删除记录（不存在也视为成功）"""
        ...

    async def query(
        self,
        collection: str,
        text: str = "",
        refinements: Optional[Refinements] = None,
        filters: Optional[Mapping[str, Any]] = None,
        page: int = 0,
        page_size: int = 20,
        facets: Sequence[str] = (),
    ) -> StoreQueryResult:
        ...

    async def set_settings(self, collection: str, settings: Dict[str, Any]) -> None:
        ...

    async def clear(self, collection: str) -> None:
        ...

    async def close(self) -> None:
        ...


def _values_of(record: Dict[str, Any], attribute: str) -> List[str]:
    """记录在某 attribute 上的 facet 值（列表字段展开）"""
    value = record.get(attribute)
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return [facet_value(item) for item in value]
    return [facet_value(value)]


def _parse_ranking(rule: str):
    """解析 asc(attr) / desc(attr)"""
    rule = rule.strip()
    for direction in ("asc", "desc"):
        prefix = f"{direction}("
        if rule.startswith(prefix) and rule.endswith(")"):
            return direction, rule[len(prefix):-1]
    return None


class InMemoryIndexStore:
    """内存索引存储"""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._settings: Dict[str, Dict[str, Any]] = {}

    # ===== 写入 =====

    async def upsert(self, collection: str, object_id: str, record: Dict[str, Any]) -> None:
        stored = copy.deepcopy(dict(record))
        stored["objectID"] = object_id
        # 字典赋值是原子替换，读者只会看到旧记录或新记录
        self._collections.setdefault(collection, {})[object_id] = stored

    async def delete(self, collection: str, object_id: str) -> None:
        self._collections.get(collection, {}).pop(object_id, None)

    async def set_settings(self, collection: str, settings: Dict[str, Any]) -> None:
        self._settings[collection] = copy.deepcopy(settings)
        self._collections.setdefault(collection, {})

    async def clear(self, collection: str) -> None:
        self._collections[collection] = {}

    async def close(self) -> None:
        return None

    # ===== 读取 =====

    def get(self, collection: str, object_id: str) -> Optional[Dict[str, Any]]:
        """按 objectID 读取（返回副本）"""
        record = self._collections.get(collection, {}).get(object_id)
        return copy.deepcopy(record) if record is not None else None

    def all(self, collection: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(record) for record in self._collections.get(collection, {}).values()]

    def count(self, collection: str) -> int:
        return len(self._collections.get(collection, {}))

    def get_settings(self, collection: str) -> Dict[str, Any]:
        return copy.deepcopy(self._settings.get(collection, {}))

    async def query(
        self,
        collection: str,
        text: str = "",
        refinements: Optional[Refinements] = None,
        filters: Optional[Mapping[str, Any]] = None,
        page: int = 0,
        page_size: int = 20,
        facets: Sequence[str] = (),
    ) -> StoreQueryResult:
        # 快照：查询期间的并发写入不影响本次结果
        records = list(self._collections.get(collection, {}).values())
        settings = self._settings.get(collection, {})

        refinement_sets = {
            attribute: {facet_value(value) for value in values}
            for attribute, values in (refinements or {}).items()
            if values
        }
        filter_values = {
            attribute: facet_value(value)
            for attribute, value in (filters or {}).items()
        }

        text_matched = [
            record for record in records
            if self._match_text(record, text, settings) and self._match_filters(record, filter_values)
        ]
        matched = [record for record in text_matched if self._match_refinements(record, refinement_sets)]
        matched = self._rank(matched, settings)

        facet_counts: Dict[str, Dict[str, int]] = {}
        for attribute in facets:
            # disjunctive：排除该 attribute 自身的 refinement
            others = {k: v for k, v in refinement_sets.items() if k != attribute}
            counts: Dict[str, int] = {}
            for record in text_matched:
                if not self._match_refinements(record, others):
                    continue
                for value in set(_values_of(record, attribute)):
                    counts[value] = counts.get(value, 0) + 1
            facet_counts[attribute] = dict(sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])))

        start = page * page_size
        hits = [copy.deepcopy(record) for record in matched[start:start + page_size]]

        return StoreQueryResult(
            hits=hits,
            total_hits=len(matched),
            facets=facet_counts,
            processing_ms=0,
        )

    def _match_text(self, record: Dict[str, Any], text: str, settings: Dict[str, Any]) -> bool:
        """空查询匹配全部；否则每个词都需出现在某个可搜索字段中（前缀/子串，忽略大小写）"""
        terms = [term for term in (text or "").lower().split() if term]
        if not terms:
            return True

        attributes = settings.get("searchableAttributes")
        if attributes:
            values = [record.get(attribute) for attribute in attributes]
        else:
            values = [value for key, value in record.items() if key != "objectID"]

        haystack = []
        for value in values:
            if value is None:
                continue
            if isinstance(value, (list, tuple, set)):
                haystack.extend(str(item).lower() for item in value)
            elif isinstance(value, str):
                haystack.append(value.lower())

        return all(any(term in candidate for candidate in haystack) for term in terms)

    def _match_filters(self, record: Dict[str, Any], filter_values: Dict[str, str]) -> bool:
        return all(value in _values_of(record, attribute) for attribute, value in filter_values.items())

    def _match_refinements(self, record: Dict[str, Any], refinement_sets: Dict[str, set]) -> bool:
        for attribute, accepted in refinement_sets.items():
            if not accepted.intersection(_values_of(record, attribute)):
                return False
        return True

    def _rank(self, records: List[Dict[str, Any]], settings: Dict[str, Any]) -> List[Dict[str, Any]]:
        """按 customRanking 排序（稳定排序，未设置时保持插入顺序）"""
        rules = [parsed for parsed in map(_parse_ranking, settings.get("customRanking", [])) if parsed]
        ranked = list(records)
        for direction, attribute in reversed(rules):
            present = [r for r in ranked if r.get(attribute) is not None]
            missing = [r for r in ranked if r.get(attribute) is None]
            present.sort(key=lambda r: r.get(attribute), reverse=(direction == "desc"))
            ranked = present + missing
        return ranked

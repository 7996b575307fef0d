"""
Refinement 状态管理

{query, refinements, page} 不可变状态机，只负责生成下一次查询请求，从不调用网关。
除 goto_page 以外的任何变化都会把 page 重置为 0
"""
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from sf_core.utils.errors import InvalidArgument

from .gateway import SearchRequest, SearchResponse
from .schema import facet_value


def _freeze(refinements: Optional[Mapping[str, Any]]) -> Tuple[Tuple[str, FrozenSet[str]], ...]:
    frozen = []
    for attribute, values in (refinements or {}).items():
        if isinstance(values, (list, tuple, set, frozenset)):
            value_set = frozenset(facet_value(value) for value in values)
        else:
            value_set = frozenset({facet_value(values)})
        if value_set:
            frozen.append((attribute, value_set))
    return tuple(sorted(frozen))


@dataclass(frozen=True)
class RefinementState:
    """不可变的查询状态"""
    index: str
    query: str = ""
    refinements: Tuple[Tuple[str, FrozenSet[str]], ...] = ()
    page: int = 0
    page_size: int = 20

    @classmethod
    def create(
        cls,
        index: str,
        query: str = "",
        refinements: Optional[Mapping[str, Any]] = None,
        page: int = 0,
        page_size: int = 20,
    ) -> "RefinementState":
        if page < 0:
            raise InvalidArgument(f"page must be >= 0, got {page}")
        if page_size <= 0:
            raise InvalidArgument(f"page_size must be > 0, got {page_size}")
        return cls(index=index, query=query, refinements=_freeze(refinements), page=page, page_size=page_size)

    @property
    def refinement_map(self) -> Dict[str, FrozenSet[str]]:
        return dict(self.refinements)

    def values_of(self, attribute: str) -> FrozenSet[str]:
        return self.refinement_map.get(attribute, frozenset())

    def is_refined(self, attribute: str, value: Any) -> bool:
        return facet_value(value) in self.values_of(attribute)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "query": self.query,
            "refinements": {attribute: sorted(values) for attribute, values in self.refinements},
            "page": self.page,
            "page_size": self.page_size,
        }


class RefinementStateManager:
    """Refinement 状态转移（纯函数）"""

    def query(self, state: RefinementState, text: str) -> RefinementState:
        """新的查询文本，页码归零"""
        return replace(state, query=text, page=0)

    def refine(self, state: RefinementState, attribute: str, value: Any) -> RefinementState:
        """切换某个 facet 值：已选中则移除，否则加入；页码归零"""
        refinements = state.refinement_map
        values = set(refinements.get(attribute, frozenset()))
        normalized = facet_value(value)
        if normalized in values:
            values.discard(normalized)
        else:
            values.add(normalized)

        if values:
            refinements[attribute] = frozenset(values)
        else:
            refinements.pop(attribute, None)
        return replace(state, refinements=_freeze(refinements), page=0)

    def clear_refinements(self, state: RefinementState, attribute: Optional[str] = None) -> RefinementState:
        """清除全部 refinement，或只清除某个 attribute；页码归零"""
        if attribute is None:
            refinements: Dict[str, FrozenSet[str]] = {}
        else:
            refinements = state.refinement_map
            refinements.pop(attribute, None)
        return replace(state, refinements=_freeze(refinements), page=0)

    def set_page_size(self, state: RefinementState, page_size: int) -> RefinementState:
        if page_size <= 0:
            raise InvalidArgument(f"page_size must be > 0, got {page_size}")
        return replace(state, page_size=page_size, page=0)

    def goto_page(self, state: RefinementState, page: int) -> RefinementState:
        """跳页，其他状态不变"""
        if page < 0:
            raise InvalidArgument(f"page must be >= 0, got {page}")
        return replace(state, page=page)

    def to_request(self, state: RefinementState) -> SearchRequest:
        """生成下一次查询请求"""
        return SearchRequest(
            index=state.index,
            query=state.query,
            refinements={attribute: sorted(values) for attribute, values in state.refinements},
            page=state.page,
            page_size=state.page_size,
        )


@dataclass(frozen=True)
class PaginationInfo:
    """分页控件数据（当前页附近的页码窗口）"""
    current_page: int
    total_pages: int
    total_hits: int
    pages: List[int] = field(default_factory=list)

    @property
    def is_first_page(self) -> bool:
        return self.current_page == 0

    @property
    def is_last_page(self) -> bool:
        return self.total_pages == 0 or self.current_page >= self.total_pages - 1

    @classmethod
    def build(cls, current_page: int, total_pages: int, total_hits: int = 0, padding: int = 2) -> "PaginationInfo":
        """窗口大小为 2 * padding + 1，靠近首尾时向另一侧补齐"""
        if total_pages <= 0:
            return cls(current_page=current_page, total_pages=0, total_hits=total_hits, pages=[])

        width = 2 * padding + 1
        anchor = min(current_page, total_pages - 1)
        first = max(0, anchor - padding)
        last = min(total_pages - 1, first + width - 1)
        first = max(0, last - width + 1)
        return cls(
            current_page=current_page,
            total_pages=total_pages,
            total_hits=total_hits,
            pages=list(range(first, last + 1)),
        )

    @classmethod
    def from_response(cls, response: SearchResponse, padding: int = 2) -> "PaginationInfo":
        return cls.build(response.page, response.total_pages, response.total_hits, padding=padding)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_page": self.current_page,
            "total_pages": self.total_pages,
            "total_hits": self.total_hits,
            "pages": list(self.pages),
            "is_first_page": self.is_first_page,
            "is_last_page": self.is_last_page,
        }

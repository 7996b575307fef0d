"""
ShelfFlow API 路由模块
"""
from fastapi import APIRouter

from .search import router as search_router
from .stock import router as stock_router

# 创建主路由器
api_router = APIRouter()

api_router.include_router(search_router, prefix="/search", tags=["Search"])
api_router.include_router(stock_router, prefix="/stock", tags=["Stock"])

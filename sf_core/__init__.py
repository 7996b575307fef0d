"""
ShelfFlow 核心模块
搜索索引与库存一致性层
"""

__version__ = "1.0.0"

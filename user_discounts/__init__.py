"""
用户折扣分配与叠加计算
"""

__version__ = "1.0.0"

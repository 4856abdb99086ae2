# 应用托管发布控制器
"""渐进式发布与流量切分控制器"""

__version__ = "1.0.0"

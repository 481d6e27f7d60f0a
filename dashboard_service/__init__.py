"""
BTC Dashboard 数据服务
聚合多家行情 / 链上数据提供商，计算买卖指标与综合评分，并通过缓存读路径对外提供

架构分层：
  数据获取层 (Acquisition)  → 按数据类型依次尝试多家提供商（级联降级）
  缓存层     (Cache)        → 快照结果缓存 + 365 日历史序列缓存
  处理层     (Processing)   → K 线规范化、历史区间数据整理
  分析层     (Analysis)     → 指标计算与信号分级
  评分层     (Scoring)      → 加权综合评分
"""

__version__ = "3.5.0"

"""
数据流分层架构
  Layer 1 – Acquisition  : 数据获取（每种数据类型一组有序提供商，级联降级）
  Layer 2 – Cache        : 快照结果缓存 + 365 日历史序列缓存
  Layer 3 – Processing   : K 线规范化与历史区间整理
  Layer 4 – Analysis     : 指标计算与信号分级
  Layer 5 – Scoring      : 加权综合评分
"""

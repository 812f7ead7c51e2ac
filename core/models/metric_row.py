from .base import Base, Column, String, Float, DateTime, Text, UniqueConstraint


class MetricRow(Base):
    """按周期聚合的指标，(metric_type, period, period_start) 唯一，重算只覆盖不新增。"""
    __tablename__ = "metric_rows"
    __table_args__ = (
        UniqueConstraint("metric_type", "period", "period_start", name="uq_metric_rows_type_period_start"),
    )

    id = Column(String(64), primary_key=True)
    metric_type = Column(String(120), index=True, nullable=False)
    metric_value = Column(Float, nullable=False, default=0.0)
    metric_unit = Column(String(32), nullable=True)
    dimensions_json = Column(Text, nullable=True)
    metadata_json = Column(Text, nullable=True)

    period = Column(String(16), index=True, nullable=False)
    period_start = Column(DateTime, index=True, nullable=False)
    period_end = Column(DateTime, index=True, nullable=False)

    created_at = Column(DateTime)
    updated_at = Column(DateTime)

from .base import Base, Column, String, Integer, DateTime, Text, Index


class SystemEvent(Base):
    """安全事件、管理操作、批处理结果等非请求级事件，生命周期独立于 ActivityRecord。"""
    __tablename__ = "system_events"

    id = Column(String(64), primary_key=True)
    event_type = Column(String(120), index=True, nullable=False)
    event_category = Column(String(32), index=True, nullable=False, default="SYSTEM_EVENT")
    source = Column(String(120), nullable=True)
    source_id = Column(String(255), index=True, nullable=True)
    payload_json = Column(Text, nullable=True)
    correlation_id = Column(String(64), nullable=True)
    status = Column(String(16), index=True, nullable=False, default="COMPLETED")
    retry_count = Column(Integer, nullable=False, default=0)
    processed_at = Column(DateTime, nullable=True)

    timestamp = Column(DateTime, index=True, nullable=False)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


Index("ix_system_events_category_ts", SystemEvent.event_category, SystemEvent.timestamp)

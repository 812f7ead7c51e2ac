from sqlalchemy import event

from .base import Base, Column, String, Integer, DateTime, Text, Index


class ActivityRecord(Base):
    """
    一次被观测到的操作。

    只追加：写入后不允许业务层修改（包括 timestamp），
    仅保留策略引擎可以归档 / 删除。
    """
    __tablename__ = "activity_records"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(255), index=True, nullable=True)
    session_id = Column(String(120), index=True, nullable=True)

    action = Column(String(32), index=True, nullable=False)
    resource = Column(String(120), index=True, nullable=False)
    resource_id = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    referer = Column(String(500), nullable=True)

    method = Column(String(16), nullable=True)
    endpoint = Column(String(500), nullable=True)
    status_code = Column(Integer, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    severity = Column(String(16), index=True, nullable=False, default="INFO")
    metadata_json = Column(Text, nullable=True)
    tags = Column(Text, nullable=True)

    timestamp = Column(DateTime, index=True, nullable=False)


Index("ix_activity_records_user_ts", ActivityRecord.user_id, ActivityRecord.timestamp)
Index("ix_activity_records_severity_ts", ActivityRecord.severity, ActivityRecord.timestamp)


class ImmutableRecordError(Exception):
    pass


@event.listens_for(ActivityRecord, "before_update")
def _refuse_activity_update(mapper, connection, target):
    raise ImmutableRecordError(f"activity record {target.id} is append-only")

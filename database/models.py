# coding_sandbox/database/models.py
from sqlalchemy import Column, String, DateTime, Text
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRecord(Base):
    __tablename__ = "jobs"

    id = Column(String, primary_key=True)  # job_<uuid>
    status = Column(String, nullable=False)  # JobStatus の値（検索用に非正規化）
    payload = Column(Text, nullable=False)  # Job 全体のJSON（ログを含む）
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self):
        return f"<JobRecord(id='{self.id}', status='{self.status}')>"

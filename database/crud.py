# coding_sandbox/database/crud.py
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database.models import JobRecord


class CRUD:
    def __init__(self, session_maker: sessionmaker):
        self.SessionLocal = session_maker

    def get_job_payload(self, job_id: str) -> Optional[str]:
        with self.SessionLocal() as session:
            record = session.query(JobRecord).filter(JobRecord.id == job_id).first()
            return str(record.payload) if record else None

    def upsert_job(self, job_id: str, status: str, payload: str,
                   created_at: datetime, updated_at: datetime) -> JobRecord:
        with self.SessionLocal() as session:
            try:
                record = session.query(JobRecord).filter(JobRecord.id == job_id).first()
                if record is None:
                    record = JobRecord(id=job_id, created_at=created_at)
                    session.add(record)
                record.status = status
                record.payload = payload
                record.updated_at = updated_at
                session.commit()
                session.refresh(record)
                return record
            except SQLAlchemyError:
                session.rollback()
                raise

    def list_job_ids(self) -> List[str]:
        with self.SessionLocal() as session:
            return [row.id for row in session.query(JobRecord.id).order_by(JobRecord.created_at).all()]

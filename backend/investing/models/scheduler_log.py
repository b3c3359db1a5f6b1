from sqlalchemy import Column, Integer, String, Text, DateTime
from datetime import datetime
from ..database import Base


class SchedulerLog(Base):
    __tablename__ = "scheduler_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    type = Column(String(20), nullable=False)
    trigger = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, index=True)
    duration = Column(Integer)  # milliseconds
    records_updated = Column(Integer)
    errors = Column(Integer)
    details = Column(Text)  # JSON

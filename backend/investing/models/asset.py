from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime
from ..database import Base


class Currency(str, Enum):
    BRL = "BRL"
    USD = "USD"


class Asset(Base):
    __tablename__ = "assets"

    id = Column(Integer, primary_key=True, index=True)
    ticker = Column(String(20), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    currency = Column(String(3), nullable=False, default=Currency.BRL.value, index=True)
    market = Column(String(50))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

from sqlalchemy import Column, Integer, String, DateTime, Date, Numeric, ForeignKey
from datetime import datetime
from ..database import Base


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    ticker = Column(String(20), nullable=False)
    type = Column(String(10), nullable=False)  # BUY / SELL
    quantity = Column(Numeric(18, 6), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    date = Column(Date, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

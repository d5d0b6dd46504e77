from sqlalchemy import Column, Integer, String, Numeric, Boolean, Index
from app.core.database import Base
from app.models.base import TimestampMixin


class Plan(Base, TimestampMixin):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(128), nullable=False, unique=True)
    description = Column(String(255), nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    duration = Column(Integer, nullable=False)  # hours
    data_limit = Column(String(32), nullable=True)
    speed_limit = Column(String(32), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)


Index("ix_plans_active", Plan.is_active)

from sqlalchemy import (
    Column, Integer, String, Boolean, Date, DateTime, Text, ForeignKey, Index, func,
)
from sqlalchemy.orm import relationship

from rentbook.db.session import Base


class Cabinet(Base):
    __tablename__ = "cabinets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False)
    description = Column(Text, nullable=False, default="")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    schedules = relationship("CabinetSchedule", back_populates="cabinet")
    overrides = relationship("CabinetScheduleOverride", back_populates="cabinet")


class CabinetSchedule(Base):
    __tablename__ = "cabinet_schedules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cabinet_id = Column(Integer, ForeignKey("cabinets.id"), nullable=False)
    day_of_week = Column(Integer, nullable=False)  # 1 = Monday .. 7 = Sunday
    start_time = Column(String(5), nullable=False)  # HH:MM
    end_time = Column(String(5), nullable=False)
    slot_duration = Column(Integer, nullable=False, default=60)  # minutes
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    cabinet = relationship("Cabinet", back_populates="schedules")

    __table_args__ = (Index("idx_cabinet_schedules_day", "cabinet_id", "day_of_week"),)


class CabinetScheduleOverride(Base):
    __tablename__ = "cabinet_schedule_overrides"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cabinet_id = Column(Integer, ForeignKey("cabinets.id"), nullable=False)
    date = Column(Date, nullable=False)
    is_closed = Column(Boolean, nullable=False, default=False)
    start_time = Column(String(5), nullable=True)
    end_time = Column(String(5), nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    cabinet = relationship("Cabinet", back_populates="overrides")

    __table_args__ = (Index("idx_cabinet_overrides_date", "cabinet_id", "date", unique=True),)

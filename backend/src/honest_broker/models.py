"""SQLAlchemy models and DTOs for the crosswalk."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class CrosswalkMapping(Base):
    __tablename__ = "crosswalk"
    __table_args__ = (
        UniqueConstraint("broker_name", "id_type", "id_in", name="uq_crosswalk_key"),
        Index("ix_crosswalk_reverse", "broker_name", "id_out", "id_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    broker_name: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    id_type: Mapped[str] = mapped_column(String(64), nullable=False, default="patient_id")
    id_in: Mapped[str] = mapped_column(Text, nullable=False)
    id_out: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class CrosswalkLog(Base):
    __tablename__ = "crosswalk_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    broker_name: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    id_in: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    id_out: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    id_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )


class CrosswalkEntry(BaseModel):
    id: int
    broker_name: str
    id_type: str
    id_in: str
    id_out: str
    created_at: datetime
    updated_at: datetime

    model_config = {
        "from_attributes": True,
    }


class CrosswalkLogEntry(BaseModel):
    id: int
    broker_name: str
    action: str
    id_in: Optional[str]
    id_out: Optional[str]
    id_type: Optional[str]
    details: Optional[str]
    timestamp: datetime

    model_config = {
        "from_attributes": True,
    }

"""
SQLAlchemy ORM Models for the EPG aggregator

This module defines the table backing the duration heuristics store.
"""
from datetime import datetime, timezone
from sqlalchemy import BigInteger, DateTime, Float, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models"""
    pass


class SourceHeuristics(Base):
    """Last observed download size and parse duration for one source URL"""
    __tablename__ = "source_heuristics"

    source_url: Mapped[str] = mapped_column(String, primary_key=True)
    last_byte_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_parse_duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return (
            f"<SourceHeuristics(source_url={self.source_url}, "
            f"last_byte_size={self.last_byte_size}, "
            f"last_parse_duration_seconds={self.last_parse_duration_seconds})>"
        )

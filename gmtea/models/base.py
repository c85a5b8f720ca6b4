"""
Declarative base and shared mixins for all models.
"""

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base holding the metadata for every table."""


class BaseModel(Base):
    """Abstract base for all models."""
    
    __abstract__ = True
    
    def to_dict(self) -> Dict[str, Any]:
        """Column values keyed by attribute name."""
        return {
            column.key: getattr(self, column.key)
            for column in self.__mapper__.column_attrs
        }


class TimestampMixin:
    """Row creation and update timestamps maintained by the database."""
    
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        comment="Row creation time"
    )
    
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Row last update time"
    )

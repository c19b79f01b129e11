"""
SQLAlchemy base configuration for Identity Reconciliation System
This module sets up the SQLAlchemy declarative base and the columns
shared by every table (identity, timestamps, soft delete)
"""

from sqlalchemy import Column, DateTime, Integer
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models"""
    pass


class BaseModel(Base):
    """
    Abstract model with an autoincrement id and lifecycle timestamps

    Timestamps are assigned by the service layer so that seniority
    (created_at) comes from a single clock.
    """
    __abstract__ = True

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    deleted_at = Column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
        comment="Soft delete marker; deleted rows are ignored by reads"
    )

    def to_dict(self):
        """Column values keyed by column name"""
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}

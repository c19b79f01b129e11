"""
Database models package for Identity Reconciliation System
Contains SQLAlchemy models for contact information and relationships
"""

from .base import Base, BaseModel
from .contact import PRIMARY, SECONDARY, Contact

__all__ = ['Base', 'BaseModel', 'Contact', 'PRIMARY', 'SECONDARY']

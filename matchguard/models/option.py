"""Durable option and per-user field models.

These tables back the durable tier of the defense state: the ban registry
lives in the ``banned_ips`` option, session backups and login counts live
in per-user fields.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, JSON, String, UniqueConstraint

from .base import Base


class Option(Base):
    """Site-wide named value."""
    __tablename__ = "options"

    name = Column(String(191), primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)


class UserField(Base):
    """Named value scoped to one user."""
    __tablename__ = "user_fields"

    __table_args__ = (
        UniqueConstraint('user_id', 'name', name='uq_user_field'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(191), nullable=False)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
SQLAlchemy ORM models for the migration history
================================================

Defines the schema_migrations table using SQLAlchemy 2.0 ORM with type
hints. Each row is one applied migration; rows are kept in order key order
and only the last one may be removed.

The up and down operations are stored as JSON with each record, so the
applied schema can be rebuilt from the table alone.

Usage:
    from schemaledger.models import Base, SchemaMigration

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSession(engine) as session:
        result = await session.execute(
            select(SchemaMigration).order_by(SchemaMigration.order_key)
        )
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Integer, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

HISTORY_TABLE = 'schema_migrations'


class Base(AsyncAttrs, DeclarativeBase):
    """
    Base class for the engine's own ORM models.

    Kept separate from any application metadata so the history table is
    never part of a declared snapshot.
    """
    pass


class SchemaMigration(Base):
    """
    One applied migration (a history record).

    Primary use: ordering checks, revert of the tail, rebuilding the
    applied snapshot.
    """
    __tablename__ = HISTORY_TABLE

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    order_key: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        unique=True,
        comment="Migration order key (strictly increasing)"
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Migration name"
    )

    checksum: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SHA-256 of the migration content at apply time"
    )

    applied_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
    )

    applied_by: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default='system',
    )

    execution_time_ms: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    data_loss: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Reverting this migration loses data"
    )

    up_json: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Up operations (JSON array)"
    )

    down_json: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Down operations (JSON array)"
    )

    def __repr__(self) -> str:
        return (
            f"<SchemaMigration(order_key={self.order_key}, "
            f"name='{self.name}')>"
        )

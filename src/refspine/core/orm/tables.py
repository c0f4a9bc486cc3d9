"""SQLAlchemy 2.0 table definitions for the reference store.

Each table keeps the full record as one JSON document plus the key columns
the store filters on. ``version`` mirrors the record's write counter so
compare-and-set is a single ``UPDATE ... WHERE version = :expected``.

Usage::

    from refspine.core.orm import RefSpineBase, create_refspine_engine

    engine = create_refspine_engine("sqlite:///refspine.db")
    RefSpineBase.metadata.create_all(engine)
"""

from __future__ import annotations

from sqlalchemy import JSON, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from refspine.core.orm.base import RefSpineBase


class ConceptTable(RefSpineBase):
    __tablename__ = "refspine_concepts"

    uri: Mapped[str] = mapped_column(Text, primary_key=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    dimension: Mapped[str | None] = mapped_column(Text, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    record: Mapped[dict] = mapped_column(JSON, nullable=False)


class HierarchyTreeTable(RefSpineBase):
    __tablename__ = "refspine_hierarchy_trees"

    dimension: Mapped[str] = mapped_column(Text, primary_key=True)
    built_at: Mapped[str] = mapped_column(Text, nullable=False)
    record: Mapped[dict] = mapped_column(JSON, nullable=False)


class AssociationTable(RefSpineBase):
    __tablename__ = "refspine_associations"

    source_feature_id: Mapped[str] = mapped_column(Text, primary_key=True)
    collection: Mapped[str] = mapped_column(Text, primary_key=True)
    item_id: Mapped[str] = mapped_column(Text, primary_key=True)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    record: Mapped[dict] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        Index("ix_refspine_associations_target", "collection", "item_id"),
    )


class CacheEntryTable(RefSpineBase):
    __tablename__ = "refspine_cache_entries"

    collection: Mapped[str] = mapped_column(Text, primary_key=True)
    item_id: Mapped[str] = mapped_column(Text, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    record: Mapped[dict] = mapped_column(JSON, nullable=False)


class FeatureTable(RefSpineBase):
    __tablename__ = "refspine_features"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    record: Mapped[dict] = mapped_column(JSON, nullable=False)


__all__ = [
    "ConceptTable",
    "HierarchyTreeTable",
    "AssociationTable",
    "CacheEntryTable",
    "FeatureTable",
]

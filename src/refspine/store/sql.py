"""SQLAlchemy-backed reference store.

One transaction per operation. Compare-and-set is an ``UPDATE ... WHERE
version = :expected`` whose rowcount decides success; inserts with
``expected_version=None`` rely on the primary key to reject a racing writer.
``commit_hierarchy`` replaces the tree and writes every changed closure, with
its version bump, in a single transaction.

Example:
    >>> store = SqlReferenceStore.from_url("sqlite:///refspine.db")
    >>> store.get_concept("http://urn.fi/URN:NBN:fi:au:ucum:r102")
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from refspine.core.errors import ConcurrentModificationError, StorageError
from refspine.core.logging import get_logger
from refspine.core.orm import (
    AssociationTable,
    CacheEntryTable,
    ConceptTable,
    FeatureTable,
    HierarchyTreeTable,
    RefSpineBase,
    create_refspine_engine,
    refspine_session_factory,
)
from refspine.core.timestamps import to_iso8601
from refspine.models import (
    Association,
    CacheEntry,
    Closures,
    Concept,
    FeatureOfInterest,
    HierarchyTree,
)
from refspine.store.protocol import AssociationKey, require_last_modified

log = get_logger(__name__)


class SqlReferenceStore:
    """``ReferenceStore`` over a SQLAlchemy engine."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    @classmethod
    def from_engine(cls, engine: Engine, *, create_schema: bool = True) -> SqlReferenceStore:
        if create_schema:
            RefSpineBase.metadata.create_all(engine)
        return cls(refspine_session_factory(engine))

    @classmethod
    def from_url(cls, url: str, **engine_kwargs: Any) -> SqlReferenceStore:
        return cls.from_engine(create_refspine_engine(url, **engine_kwargs))

    # ------------------------------------------------------------------ #
    # Concepts
    # ------------------------------------------------------------------ #

    def get_concept(self, uri: str) -> Concept | None:
        with self._session_factory() as session:
            row = session.get(ConceptTable, uri)
            return Concept.from_dict(row.record) if row is not None else None

    def list_concepts(self, dimension: str | None = None) -> list[Concept]:
        stmt = select(ConceptTable).order_by(ConceptTable.uri)
        if dimension is not None:
            stmt = stmt.where(ConceptTable.dimension == dimension)
        with self._session_factory() as session:
            return [Concept.from_dict(row.record) for row in session.scalars(stmt)]

    def find_concepts_by_code(self, code: str) -> list[Concept]:
        stmt = select(ConceptTable).where(ConceptTable.code == code).order_by(ConceptTable.uri)
        with self._session_factory() as session:
            return [Concept.from_dict(row.record) for row in session.scalars(stmt)]

    def upsert_concept(self, concept: Concept, expected_version: int | None = None) -> Concept:
        require_last_modified("concept", concept.uri, concept.last_modified)
        record = self._write(
            ConceptTable,
            {"uri": concept.uri},
            {"code": concept.code, "dimension": concept.dimension},
            concept.to_dict(),
            expected_version,
            key_repr=concept.uri,
        )
        return Concept.from_dict(record)

    def delete_concept(self, uri: str) -> bool:
        with self._transaction() as session:
            row = session.get(ConceptTable, uri)
            if row is None:
                return False
            session.delete(row)
        log.info("store.concept_deleted", uri=uri)
        return True

    def list_dimensions(self) -> list[str]:
        with self._session_factory() as session:
            dims = set(
                session.scalars(
                    select(ConceptTable.dimension).where(ConceptTable.dimension.is_not(None)).distinct()
                )
            )
            dims.update(session.scalars(select(HierarchyTreeTable.dimension)))
        return sorted(dims)

    # ------------------------------------------------------------------ #
    # Hierarchy
    # ------------------------------------------------------------------ #

    def get_tree(self, dimension: str) -> HierarchyTree | None:
        with self._session_factory() as session:
            row = session.get(HierarchyTreeTable, dimension)
            return HierarchyTree.from_dict(row.record) if row is not None else None

    def commit_hierarchy(self, tree: HierarchyTree, closures: dict[str, Closures]) -> None:
        with self._transaction() as session:
            if closures:
                rows = session.execute(
                    select(ConceptTable.uri, ConceptTable.version, ConceptTable.record).where(
                        ConceptTable.uri.in_(list(closures))
                    )
                ).all()
                for uri, version, record in rows:
                    closure = closures[uri]
                    if closure.version is not None and version != closure.version:
                        raise ConcurrentModificationError(uri, closure.version, version)
                    up, down = sorted(closure.broader_transitive), sorted(closure.narrower_transitive)
                    if record["broader_transitive"] == up and record["narrower_transitive"] == down:
                        continue
                    record = {**record, "broader_transitive": up, "narrower_transitive": down, "version": version + 1}
                    result = session.execute(
                        update(ConceptTable)
                        .where(ConceptTable.uri == uri, ConceptTable.version == version)
                        .values(version=version + 1, record=record)
                    )
                    if result.rowcount != 1:
                        # rolls back the tree and every closure written so far
                        raise ConcurrentModificationError(uri, version, "<written during rebuild>")
            session.merge(
                HierarchyTreeTable(
                    dimension=tree.dimension,
                    built_at=to_iso8601(tree.built_at) or "",
                    record=tree.to_dict(),
                )
            )

    # ------------------------------------------------------------------ #
    # Associations
    # ------------------------------------------------------------------ #

    def get_association(self, key: AssociationKey) -> Association | None:
        with self._session_factory() as session:
            row = session.get(AssociationTable, tuple(key))
            return Association.from_dict(row.record) if row is not None else None

    def list_associations(self, source_feature_id: str | None = None) -> list[Association]:
        stmt = select(AssociationTable).order_by(
            AssociationTable.source_feature_id, AssociationTable.collection, AssociationTable.item_id
        )
        if source_feature_id is not None:
            stmt = stmt.where(AssociationTable.source_feature_id == source_feature_id)
        with self._session_factory() as session:
            return [Association.from_dict(row.record) for row in session.scalars(stmt)]

    def list_associations_for_target(self, collection: str, item_id: str) -> list[Association]:
        stmt = (
            select(AssociationTable)
            .where(AssociationTable.collection == collection, AssociationTable.item_id == item_id)
            .order_by(AssociationTable.source_feature_id)
        )
        with self._session_factory() as session:
            return [Association.from_dict(row.record) for row in session.scalars(stmt)]

    def upsert_association(
        self, association: Association, expected_version: int | None = None
    ) -> Association:
        require_last_modified("association", association.key, association.last_modified)
        source_feature_id, collection, item_id = association.key
        record = self._write(
            AssociationTable,
            {"source_feature_id": source_feature_id, "collection": collection, "item_id": item_id},
            {"status": association.status.value},
            association.to_dict(),
            expected_version,
            key_repr=str(association.key),
        )
        return Association.from_dict(record)

    # ------------------------------------------------------------------ #
    # Cache entries
    # ------------------------------------------------------------------ #

    def get_cache_entry(self, collection: str, item_id: str) -> CacheEntry | None:
        with self._session_factory() as session:
            row = session.get(CacheEntryTable, (collection, item_id))
            return CacheEntry.from_dict(row.record) if row is not None else None

    def put_cache_entry(self, entry: CacheEntry, expected_version: int | None = None) -> CacheEntry:
        require_last_modified("cache entry", entry.key, entry.last_modified)
        record = self._write(
            CacheEntryTable,
            {"collection": entry.collection, "item_id": entry.item_id},
            {},
            entry.to_dict(),
            expected_version,
            key_repr=str(entry.key),
        )
        return CacheEntry.from_dict(record)

    def list_cache_entries(self, collection: str | None = None) -> list[CacheEntry]:
        stmt = select(CacheEntryTable).order_by(CacheEntryTable.collection, CacheEntryTable.item_id)
        if collection is not None:
            stmt = stmt.where(CacheEntryTable.collection == collection)
        with self._session_factory() as session:
            return [CacheEntry.from_dict(row.record) for row in session.scalars(stmt)]

    # ------------------------------------------------------------------ #
    # Features
    # ------------------------------------------------------------------ #

    def get_feature(self, feature_id: str) -> FeatureOfInterest | None:
        with self._session_factory() as session:
            row = session.get(FeatureTable, feature_id)
            return FeatureOfInterest.from_dict(row.record) if row is not None else None

    def put_feature(self, feature: FeatureOfInterest) -> None:
        with self._transaction() as session:
            session.merge(FeatureTable(id=feature.id, record=feature.to_dict()))

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _transaction(self):
        return _Transaction(self._session_factory)

    def _write(
        self,
        table: type,
        pk: dict[str, str],
        columns: dict[str, Any],
        record: dict[str, Any],
        expected_version: int | None,
        *,
        key_repr: str,
    ) -> dict[str, Any]:
        """Compare-and-set write of ``record``; returns it stamped with the new version."""
        version = (expected_version or 0) + 1
        record = {**record, "version": version}
        values = {**columns, "version": version, "record": record}
        pk_clause = [getattr(table, name) == value for name, value in pk.items()]
        try:
            with self._transaction() as session:
                if expected_version is None:
                    existing = session.get(table, tuple(pk.values()))
                    if existing is not None:
                        raise ConcurrentModificationError(key_repr, None, existing.version)
                    session.add(table(**pk, **values))
                    session.flush()
                    return record
                result = session.execute(
                    update(table)
                    .where(*pk_clause, table.version == expected_version)
                    .values(**values)
                )
                if result.rowcount != 1:
                    row = session.get(table, tuple(pk.values()))
                    actual = row.version if row is not None else None
                    raise ConcurrentModificationError(key_repr, expected_version, actual)
                return record
        except IntegrityError as exc:
            raise ConcurrentModificationError(key_repr, expected_version, "<inserted concurrently>") from exc


class _Transaction:
    """Session in a transaction; SQLAlchemy failures surface as ``StorageError``."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory
        self._session: Session | None = None

    def __enter__(self) -> Session:
        self._session = self._session_factory()
        self._session.begin()
        return self._session

    def __exit__(self, exc_type, exc, tb) -> bool:
        session = self._session
        try:
            if exc_type is None:
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    raise
                except SQLAlchemyError as err:
                    session.rollback()
                    raise StorageError(f"commit failed: {err}", cause=err) from err
            else:
                session.rollback()
                if isinstance(exc, SQLAlchemyError) and not isinstance(exc, IntegrityError):
                    raise StorageError(f"database error: {exc}", cause=exc) from exc
        finally:
            session.close()
        return False


__all__ = ["SqlReferenceStore"]

"""Dependency graph store for Switchyard.

Stores typed, directed edges between elements and answers forward and
reverse lookups over them. Every mutation writes an audit event in the same
transaction as the edge change.

Edge direction follows the blocking convention used everywhere in the
engine: ``source --blocks--> target`` means *source waits for target*.

``relates-to`` is symmetric. Its endpoints are stored in canonical order
(the lexicographically smaller id first), so ``relates-to(A, B)`` and
``relates-to(B, A)`` address the same row.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

import pydantic
import structlog
from sqlalchemy import Select, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from switchyard.database.models.dependency import Dependency, DependencyType
from switchyard.database.queries.event import record_event
from switchyard.errors import ConflictError, NotFoundError, ValidationError
from switchyard.ids import ElementId
from switchyard.orchestrator.types import (
    KNOWN_TEST_TYPES,
    ValidatesMetadata,
    awaits_metadata_adapter,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]

SYSTEM_ACTOR = "system"


def parse_dependency_type(value: DependencyType | str) -> DependencyType:
    """Convert a value to a DependencyType.

    Raises:
        ValidationError: If the value is not a known dependency type.
    """
    try:
        return DependencyType(value)
    except ValueError as e:
        raise ValidationError(
            f"Unknown dependency type: {value!r}",
            details={"type": str(value), "valid": [t.value for t in DependencyType]},
        ) from e


def canonical_endpoints(
    source_id: str, target_id: str, dep_type: DependencyType
) -> tuple[str, str]:
    """Return the stored (source, target) order for an edge."""
    if dep_type is DependencyType.RELATES_TO and target_id < source_id:
        return target_id, source_id
    return source_id, target_id


def validate_dependency_metadata(
    dep_type: DependencyType, metadata: dict[str, Any] | None
) -> dict[str, Any]:
    """Validate and normalize type-specific edge metadata.

    ``awaits`` edges require a gate (timer, approval, external or webhook)
    and ``validates`` edges require a test type and result. Other types
    accept any metadata map.

    Args:
        dep_type: Edge type.
        metadata: Raw metadata supplied by the caller.

    Returns:
        Metadata ready for storage.

    Raises:
        ValidationError: If the metadata does not fit the edge type.
    """
    metadata = dict(metadata or {})
    try:
        if dep_type is DependencyType.AWAITS:
            gate = awaits_metadata_adapter.validate_python(metadata)
            return {**metadata, **gate.to_json_dict()}
        if dep_type is DependencyType.VALIDATES:
            validation = ValidatesMetadata.model_validate(metadata)
            if validation.test_type not in KNOWN_TEST_TYPES:
                logger.debug("custom_test_type", test_type=validation.test_type)
            return {**metadata, **validation.to_json_dict()}
    except pydantic.ValidationError as e:
        raise ValidationError(
            f"Invalid metadata for {dep_type.value} dependency",
            details={"type": dep_type.value, "errors": e.errors(include_url=False)},
        ) from e
    return metadata


def edge_snapshot(dep: Dependency) -> dict[str, Any]:
    """Serialize an edge for audit events."""
    return {
        "sourceId": dep.source_id,
        "targetId": dep.target_id,
        "type": dep.type,
        "createdBy": dep.created_by,
        "createdAt": dep.created_at.isoformat() if dep.created_at else None,
        "metadata": dep.metadata_,
    }


def _validated_id(value: str, field: str) -> str:
    try:
        return str(ElementId(value))
    except ValidationError as e:
        raise ValidationError(
            f"Invalid {field}: {value!r}", details={"field": field, "value": value}
        ) from e


class DependencyStore:
    """Durable, typed edge store with forward and reverse lookups.

    Attributes:
        session_factory: Callable returning new AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory
        self._logger = logger.bind(component="DependencyStore")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add(
        self,
        source_id: str,
        target_id: str,
        dep_type: DependencyType | str,
        created_by: str,
        metadata: dict[str, Any] | None = None,
    ) -> Dependency:
        """Add an edge.

        Args:
            source_id: Element the edge starts from.
            target_id: Element the edge points at.
            dep_type: Edge type.
            created_by: Actor creating the edge.
            metadata: Type-specific metadata.

        Returns:
            The stored Dependency, with endpoints in canonical order.

        Raises:
            ValidationError: Malformed id, unknown type, self-reference or
                metadata that does not fit the type.
            ConflictError: The (canonical) edge already exists.
        """
        source_id = _validated_id(source_id, "source_id")
        target_id = _validated_id(target_id, "target_id")
        kind = parse_dependency_type(dep_type)
        if source_id == target_id:
            raise ValidationError(
                "An element cannot depend on itself",
                details={"source_id": source_id, "type": kind.value},
            )
        stored_metadata = validate_dependency_metadata(kind, metadata)
        source_id, target_id = canonical_endpoints(source_id, target_id, kind)

        async with self.session_factory() as session:
            existing = await session.get(Dependency, (source_id, target_id, kind.value))
            if existing is not None:
                raise self._conflict(source_id, target_id, kind)

            dep = Dependency(
                source_id=source_id,
                target_id=target_id,
                type=kind.value,
                created_by=created_by,
                metadata_=stored_metadata,
            )
            session.add(dep)
            try:
                await session.flush()
                record_event(
                    session,
                    element_id=source_id,
                    event_type="dependency_added",
                    actor=created_by,
                    new_value=edge_snapshot(dep),
                )
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise self._conflict(source_id, target_id, kind) from e

        self._logger.info(
            "dependency_added",
            source_id=source_id,
            target_id=target_id,
            type=kind.value,
            actor=created_by,
        )
        return dep

    async def remove(
        self,
        source_id: str,
        target_id: str,
        dep_type: DependencyType | str,
        actor: str,
    ) -> None:
        """Remove an edge.

        Raises:
            ValidationError: Malformed id or unknown type.
            NotFoundError: The edge does not exist.
        """
        kind, source_id, target_id = self._normalize_key(source_id, target_id, dep_type)

        async with self.session_factory() as session:
            dep = await session.get(Dependency, (source_id, target_id, kind.value))
            if dep is None:
                raise self._not_found(source_id, target_id, kind)

            snapshot = edge_snapshot(dep)
            await session.delete(dep)
            record_event(
                session,
                element_id=source_id,
                event_type="dependency_removed",
                actor=actor,
                old_value=snapshot,
            )
            await session.commit()

        self._logger.info(
            "dependency_removed",
            source_id=source_id,
            target_id=target_id,
            type=kind.value,
            actor=actor,
        )

    async def remove_all_dependencies(
        self,
        source_id: str,
        dep_type: DependencyType | str | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> int:
        """Remove every edge starting at source_id (optionally of one type).

        Used when an element is deleted.

        Returns:
            Number of edges removed.
        """
        source_id = _validated_id(source_id, "source_id")
        stmt = select(Dependency).where(Dependency.source_id == source_id)
        if dep_type is not None:
            stmt = stmt.where(Dependency.type == parse_dependency_type(dep_type).value)
        return await self._remove_matching(stmt, actor)

    async def remove_all_dependents(
        self,
        target_id: str,
        actor: str = SYSTEM_ACTOR,
    ) -> int:
        """Remove every edge pointing at target_id.

        Returns:
            Number of edges removed.
        """
        target_id = _validated_id(target_id, "target_id")
        stmt = select(Dependency).where(Dependency.target_id == target_id)
        return await self._remove_matching(stmt, actor)

    async def _remove_matching(self, stmt: Select[tuple[Dependency]], actor: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            deps = list(result.scalars().all())
            for dep in deps:
                record_event(
                    session,
                    element_id=dep.source_id,
                    event_type="dependency_removed",
                    actor=actor,
                    old_value=edge_snapshot(dep),
                )
                await session.delete(dep)
            await session.commit()

        if deps:
            self._logger.info("dependencies_removed", count=len(deps), actor=actor)
        return len(deps)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get(
        self,
        source_id: str,
        target_id: str,
        dep_type: DependencyType | str,
    ) -> Dependency:
        """Fetch a single edge.

        Raises:
            ValidationError: Malformed id or unknown type.
            NotFoundError: The edge does not exist.
        """
        kind, source_id, target_id = self._normalize_key(source_id, target_id, dep_type)
        async with self.session_factory() as session:
            dep = await session.get(Dependency, (source_id, target_id, kind.value))
        if dep is None:
            raise self._not_found(source_id, target_id, kind)
        return dep

    async def exists(
        self,
        source_id: str,
        target_id: str,
        dep_type: DependencyType | str,
    ) -> bool:
        """Return True if the edge exists."""
        kind, source_id, target_id = self._normalize_key(source_id, target_id, dep_type)
        async with self.session_factory() as session:
            dep = await session.get(Dependency, (source_id, target_id, kind.value))
        return dep is not None

    async def dependencies_of(
        self,
        source_id: str,
        dep_type: DependencyType | str | None = None,
    ) -> list[Dependency]:
        """Edges starting at source_id, oldest first."""
        return await self.dependencies_for_many([source_id], dep_type)

    async def dependents_of(
        self,
        target_id: str,
        dep_type: DependencyType | str | None = None,
    ) -> list[Dependency]:
        """Edges pointing at target_id, oldest first."""
        return await self.dependents_for_many([target_id], dep_type)

    async def dependencies_for_many(
        self,
        source_ids: Iterable[str],
        dep_type: DependencyType | str | None = None,
    ) -> list[Dependency]:
        """Edges starting at any of source_ids, oldest first."""
        ids = [_validated_id(s, "source_id") for s in source_ids]
        if not ids:
            return []
        stmt = select(Dependency).where(Dependency.source_id.in_(ids))
        return await self._list(stmt, dep_type)

    async def dependents_for_many(
        self,
        target_ids: Iterable[str],
        dep_type: DependencyType | str | None = None,
    ) -> list[Dependency]:
        """Edges pointing at any of target_ids, oldest first."""
        ids = [_validated_id(t, "target_id") for t in target_ids]
        if not ids:
            return []
        stmt = select(Dependency).where(Dependency.target_id.in_(ids))
        return await self._list(stmt, dep_type)

    async def related_to(self, element_id: str) -> list[Dependency]:
        """All ``relates-to`` edges touching element_id, in either direction."""
        element_id = _validated_id(element_id, "element_id")
        stmt = (
            select(Dependency)
            .where(Dependency.type == DependencyType.RELATES_TO.value)
            .where(
                or_(
                    Dependency.source_id == element_id,
                    Dependency.target_id == element_id,
                )
            )
        )
        return await self._list(stmt, None)

    async def count_dependencies(
        self,
        source_id: str,
        dep_type: DependencyType | str | None = None,
    ) -> int:
        """Number of edges starting at source_id."""
        source_id = _validated_id(source_id, "source_id")
        stmt = select(func.count()).select_from(Dependency).where(
            Dependency.source_id == source_id
        )
        if dep_type is not None:
            stmt = stmt.where(Dependency.type == parse_dependency_type(dep_type).value)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def count_dependents(
        self,
        target_id: str,
        dep_type: DependencyType | str | None = None,
    ) -> int:
        """Number of edges pointing at target_id."""
        target_id = _validated_id(target_id, "target_id")
        stmt = select(func.count()).select_from(Dependency).where(
            Dependency.target_id == target_id
        )
        if dep_type is not None:
            stmt = stmt.where(Dependency.type == parse_dependency_type(dep_type).value)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _list(
        self,
        stmt: Select[tuple[Dependency]],
        dep_type: DependencyType | str | None,
    ) -> list[Dependency]:
        if dep_type is not None:
            stmt = stmt.where(Dependency.type == parse_dependency_type(dep_type).value)
        stmt = stmt.order_by(Dependency.created_at.asc())
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    @staticmethod
    def _normalize_key(
        source_id: str,
        target_id: str,
        dep_type: DependencyType | str,
    ) -> tuple[DependencyType, str, str]:
        source_id = _validated_id(source_id, "source_id")
        target_id = _validated_id(target_id, "target_id")
        kind = parse_dependency_type(dep_type)
        source_id, target_id = canonical_endpoints(source_id, target_id, kind)
        return kind, source_id, target_id

    @staticmethod
    def _conflict(source_id: str, target_id: str, kind: DependencyType) -> ConflictError:
        return ConflictError(
            f"Dependency already exists: {source_id} --{kind.value}--> {target_id}",
            details={"source_id": source_id, "target_id": target_id, "type": kind.value},
        )

    @staticmethod
    def _not_found(source_id: str, target_id: str, kind: DependencyType) -> NotFoundError:
        return NotFoundError(
            f"Dependency not found: {source_id} --{kind.value}--> {target_id}",
            details={"source_id": source_id, "target_id": target_id, "type": kind.value},
        )

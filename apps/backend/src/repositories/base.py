"""
Shared repository behaviour for the synchronized resource types.
"""

from datetime import datetime
import logging
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel
from sqlalchemy import func, select, update as sql_update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apps.backend.src.core.database import utcnow
from apps.backend.src.core.exceptions import ConstraintError, NotFoundError, ValidationError
from apps.backend.src.repositories.snapshot import StateSnapshotRepository
from apps.backend.src.schemas.common import ChangeType, PaginationParams, ResourceType
from apps.backend.src.utils.database_utils import database_session, validate_input
from apps.backend.src.utils.diff_generator import DiffGenerator

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")

# Columns that never count as a meaningful change on their own
BOOKKEEPING_FIELDS = frozenset({"last_seen", "config_digest", "missing_count"})


class BaseRepository(Generic[ModelT]):
    """
    CRUD access for one entity type.

    Every public method accepts an optional ``session`` to join the caller's
    transaction; without one it runs in a transaction of its own. Writes append
    the matching state snapshot in the same transaction.
    """

    model: ClassVar[type]
    resource_type: ClassVar[ResourceType]
    create_schema: ClassVar[type[BaseModel]]
    update_schema: ClassVar[type[BaseModel]]
    id_field: ClassVar[str] = "id"
    filter_fields: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        snapshots: StateSnapshotRepository | None = None,
    ):
        self.session_factory = session_factory
        self.snapshots = snapshots or StateSnapshotRepository(session_factory)
        self.diff_generator = DiffGenerator()

    @property
    def _pk(self) -> Any:
        return getattr(self.model, self.id_field)

    def _session(self, session: AsyncSession | None, operation: str):
        return database_session(self.session_factory, session, f"{self.resource_type.value}_{operation}")

    def _coerce_id(self, entity_id: Any) -> Any:
        return entity_id

    # Hooks

    async def _check_create(self, payload: Any, session: AsyncSession) -> None:
        """Referential checks before insert."""

    async def _check_update(self, entity: ModelT, changes: dict[str, Any], session: AsyncSession) -> None:
        """Referential checks before applying an update."""

    async def _before_delete(self, entity: ModelT, cascade: bool, session: AsyncSession) -> None:
        """Dependent-row handling before delete."""

    # Reads

    async def get(self, entity_id: Any, session: AsyncSession | None = None) -> ModelT | None:
        async with self._session(session, "get") as s:
            return await s.get(self.model, self._coerce_id(entity_id))

    async def find_by_id(self, entity_id: Any, session: AsyncSession | None = None) -> ModelT:
        entity = await self.get(entity_id, session=session)
        if entity is None:
            raise NotFoundError(self.resource_type.value, entity_id)
        return entity

    async def exists(self, entity_id: Any, session: AsyncSession | None = None) -> bool:
        async with self._session(session, "exists") as s:
            found = await s.scalar(select(self._pk).where(self._pk == self._coerce_id(entity_id)))
        return found is not None

    async def ids(self, session: AsyncSession | None = None) -> list[Any]:
        async with self._session(session, "ids") as s:
            result = await s.execute(select(self._pk).order_by(self._pk))
            return list(result.scalars().all())

    async def all(self, session: AsyncSession | None = None) -> list[ModelT]:
        """Every persisted row, unpaginated."""
        async with self._session(session, "all") as s:
            result = await s.execute(select(self.model).order_by(self._pk))
            return list(result.scalars().all())

    def _conditions(self, filters: dict[str, Any] | None) -> list:
        conditions = []
        for key, value in (filters or {}).items():
            if key not in self.filter_fields:
                raise ValidationError(
                    f"Unsupported {self.resource_type.value} filter: {key}", field=key
                )
            if value is None:
                continue
            column = getattr(self.model, key)
            if isinstance(value, (list, tuple, set, frozenset)):
                conditions.append(column.in_([getattr(v, "value", v) for v in value]))
            else:
                conditions.append(column == getattr(value, "value", value))
        return conditions

    async def list(
        self,
        filters: dict[str, Any] | None = None,
        page: PaginationParams | None = None,
        session: AsyncSession | None = None,
    ) -> list[ModelT]:
        page = page or PaginationParams()
        async with self._session(session, "list") as s:
            result = await s.execute(
                select(self.model)
                .where(*self._conditions(filters))
                .order_by(self._pk)
                .offset(page.offset)
                .limit(page.page_size)
            )
            return list(result.scalars().all())

    async def count(
        self, filters: dict[str, Any] | None = None, session: AsyncSession | None = None
    ) -> int:
        async with self._session(session, "count") as s:
            total = await s.scalar(
                select(func.count()).select_from(self.model).where(*self._conditions(filters))
            )
        return int(total or 0)

    # Writes

    async def create(
        self,
        data: BaseModel | dict[str, Any],
        change_type: ChangeType = ChangeType.CREATED,
        session: AsyncSession | None = None,
    ) -> ModelT:
        change_type = ChangeType(change_type)
        if change_type not in (ChangeType.CREATED, ChangeType.DISCOVERED):
            raise ValidationError(
                f"create cannot record a {change_type.value} snapshot", field="change_type"
            )
        payload = validate_input(self.create_schema, data, self.resource_type.value)
        entity_id = getattr(payload, self.id_field)

        async with self._session(session, "create") as s:
            if await s.get(self.model, entity_id) is not None:
                raise ConstraintError(
                    f"{self.resource_type.value} {entity_id} already exists",
                    constraint="unique",
                    details={"resource_id": str(entity_id)},
                )
            await self._check_create(payload, s)

            entity = self.model(**payload.to_columns())
            s.add(entity)
            await s.flush()
            await self.snapshots.append(
                self.resource_type, entity_id, {"state": entity.to_dict()}, change_type, session=s
            )

        logger.info(f"{self.resource_type.value} {entity_id} {change_type.value}")
        return entity

    async def update(
        self,
        entity_id: Any,
        data: BaseModel | dict[str, Any],
        diff: dict[str, Any] | None = None,
        session: AsyncSession | None = None,
    ) -> ModelT:
        """
        Apply a partial update.

        The snapshot diff defaults to the changed columns; callers comparing
        normalized state pass their own ``diff``. An update that changes only
        bookkeeping columns records no snapshot.
        """
        payload = validate_input(self.update_schema, data, self.resource_type.value)
        changes = payload.to_columns(exclude_unset=True)

        async with self._session(session, "update") as s:
            entity = await s.get(self.model, self._coerce_id(entity_id))
            if entity is None:
                raise NotFoundError(self.resource_type.value, entity_id)
            await self._check_update(entity, changes, s)

            before = entity.to_dict()
            for key, value in changes.items():
                setattr(entity, key, value)
            await s.flush()
            after = entity.to_dict()

            if diff is None:
                diff = self.diff_generator.generate_field_diff(
                    {k: v for k, v in before.items() if k not in BOOKKEEPING_FIELDS},
                    {k: v for k, v in after.items() if k not in BOOKKEEPING_FIELDS},
                )
            if diff:
                await self.snapshots.append(
                    self.resource_type,
                    entity_id,
                    {"state": after, "diff": diff},
                    ChangeType.UPDATED,
                    session=s,
                )

        if diff:
            logger.info(f"{self.resource_type.value} {entity_id} updated: {', '.join(diff)}")
        return entity

    async def delete(
        self,
        entity_id: Any,
        cascade: bool = False,
        session: AsyncSession | None = None,
    ) -> None:
        async with self._session(session, "delete") as s:
            entity = await s.get(self.model, self._coerce_id(entity_id))
            if entity is None:
                raise NotFoundError(self.resource_type.value, entity_id)
            await self._before_delete(entity, cascade, s)

            final_state = entity.to_dict()
            await s.delete(entity)
            await s.flush()
            await self.snapshots.append(
                self.resource_type, entity_id, {"state": final_state}, ChangeType.DELETED, session=s
            )

        logger.info(f"{self.resource_type.value} {entity_id} deleted")

    # Bookkeeping writes (no snapshot)

    async def touch(
        self,
        entity_id: Any,
        seen_at: datetime | None = None,
        config_digest: str | None = None,
        session: AsyncSession | None = None,
    ) -> None:
        """Refresh last_seen and clear the missing count."""
        values: dict[str, Any] = {"last_seen": seen_at or utcnow(), "missing_count": 0}
        if config_digest is not None:
            values["config_digest"] = config_digest
        await self._bookkeeping(entity_id, values, session, "touch")

    async def set_missing_count(
        self, entity_id: Any, count: int, session: AsyncSession | None = None
    ) -> None:
        if count < 0:
            raise ValidationError("missing count cannot be negative", field="missing_count", value=count)
        await self._bookkeeping(entity_id, {"missing_count": count}, session, "set_missing_count")

    async def _bookkeeping(
        self, entity_id: Any, values: dict[str, Any], session: AsyncSession | None, operation: str
    ) -> None:
        async with self._session(session, operation) as s:
            result = await s.execute(
                sql_update(self.model)
                .where(self._pk == self._coerce_id(entity_id))
                .values(**values)
                .execution_options(synchronize_session="fetch")
            )
            if result.rowcount == 0:
                raise NotFoundError(self.resource_type.value, entity_id)

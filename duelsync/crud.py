import json
import logging
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
from sqlalchemy.orm import selectinload

from duelsync.models.dc_models import ChangeEvent, ChangePayload, Envelope
from duelsync.models.schemas import Action, Base, Room, RoomPlayer, State

TABLES = {
    "rooms": Room,
    "room_players": RoomPlayer,
    "actions": Action,
    "states": State,
}


def change_topic(table: str, room_id: str) -> str:
    return f"db-changes:{table}:{room_id}"


class StoreResult(BaseModel):
    data: Any = None
    error: Optional[Exception] = None

    class Config:
        arbitrary_types_allowed = True

    @property
    def ok(self) -> bool:
        return self.error is None


class Store(Protocol):
    async def insert(self, table: str, values: Dict[str, Any]) -> StoreResult: ...

    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        join: Optional[List[str]] = None,
        single: bool = False,
    ) -> StoreResult: ...

    async def update(
        self, table: str, values: Dict[str, Any], filters: Dict[str, Any]
    ) -> StoreResult: ...

    async def delete(self, table: str, filters: Dict[str, Any]) -> StoreResult: ...


async def create_tables(engine: AsyncEngine) -> None:
    """Create every table the store addresses"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class SqlAlchemyStore:
    """Table-scoped store over async SQLAlchemy sessions.

    Calls never raise: each returns a StoreResult holding either the affected
    rows (as plain dicts) or the error. Successful mutations are announced on
    the room's db-changes topic when a publisher is given.
    """

    def __init__(self, Session: async_sessionmaker, publisher=None):
        self.Session: async_sessionmaker = Session
        self.publisher = publisher

    @staticmethod
    def _to_dict(row, join: Optional[List[str]] = None) -> Dict[str, Any]:
        data = {c.key: getattr(row, c.key) for c in row.__table__.columns}
        for relation in join or []:
            data[relation] = [
                SqlAlchemyStore._to_dict(child) for child in getattr(row, relation)
            ]
        return data

    async def insert(self, table: str, values: Dict[str, Any]) -> StoreResult:
        """Insert one row and return it with defaults filled in

        Args:
            table (str): Table name, e.g. "room_players"
            values (Dict[str, Any]): Column values
        """
        model = TABLES[table]
        try:
            async with self.Session() as session:
                async with session.begin():
                    row = model(**values)
                    session.add(row)
                    await session.flush()
                    data = self._to_dict(row)
        except Exception as e:
            logging.error(f"Failed to insert into {table}: {e}")
            return StoreResult(error=e)

        await self._publish(table, ChangeEvent.INSERT, [(data, None)])
        return StoreResult(data=data)

    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        join: Optional[List[str]] = None,
        single: bool = False,
    ) -> StoreResult:
        """Read rows matching every equality filter

        Args:
            table (str): Table name
            filters (Dict[str, Any], optional): column == value conditions
            join (List[str], optional): Relationships to embed, e.g. ["room_players"]
            single (bool, optional): Return one dict, error unless exactly one row matches
        """
        model = TABLES[table]
        stmt = select(model).filter_by(**(filters or {}))
        for relation in join or []:
            stmt = stmt.options(selectinload(getattr(model, relation)))

        try:
            async with self.Session() as session:
                result = await session.execute(stmt)
                rows = [self._to_dict(row, join) for row in result.scalars().all()]
        except Exception as e:
            logging.error(f"Failed to select from {table}: {e}")
            return StoreResult(error=e)

        if not single:
            return StoreResult(data=rows)
        if len(rows) != 1:
            return StoreResult(
                error=LookupError(f"Expected one row in {table}, found {len(rows)}")
            )
        return StoreResult(data=rows[0])

    async def update(
        self, table: str, values: Dict[str, Any], filters: Dict[str, Any]
    ) -> StoreResult:
        """Set values on every row matching the filters and return the updated rows"""
        model = TABLES[table]
        changes = []
        try:
            async with self.Session() as session:
                async with session.begin():
                    result = await session.execute(select(model).filter_by(**filters))
                    rows = result.scalars().all()
                    olds = [self._to_dict(row) for row in rows]
                    for row in rows:
                        for key, value in values.items():
                            setattr(row, key, value)
                    await session.flush()
                    changes = [(self._to_dict(row), old) for row, old in zip(rows, olds)]
        except Exception as e:
            logging.error(f"Failed to update {table}: {e}")
            return StoreResult(error=e)

        await self._publish(table, ChangeEvent.UPDATE, changes)
        return StoreResult(data=[new for new, _ in changes])

    async def delete(self, table: str, filters: Dict[str, Any]) -> StoreResult:
        """Delete every row matching the filters and return what was removed"""
        model = TABLES[table]
        olds = []
        try:
            async with self.Session() as session:
                async with session.begin():
                    result = await session.execute(select(model).filter_by(**filters))
                    for row in result.scalars().all():
                        olds.append(self._to_dict(row))
                        await session.delete(row)
        except Exception as e:
            logging.error(f"Failed to delete from {table}: {e}")
            return StoreResult(error=e)

        await self._publish(table, ChangeEvent.DELETE, [(None, old) for old in olds])
        return StoreResult(data=olds)

    async def _publish(self, table: str, event: ChangeEvent, changes) -> None:
        if self.publisher is None:
            return
        for new, old in changes:
            room_id = (new or old).get("room_id")
            envelope = Envelope(
                type="db_change",
                event=event.value,
                payload=ChangePayload(
                    event_type=event, table=table, new=new, old=old
                ).model_dump(mode="json"),
            )
            try:
                await self.publisher.publish(
                    change_topic(table, room_id), json.dumps(envelope.model_dump())
                )
            except Exception as e:
                logging.error(f"Failed to publish {event.value} on {table}: {e}")

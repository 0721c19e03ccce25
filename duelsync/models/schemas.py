from datetime import datetime, timezone

from sqlalchemy import ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship
from sqlalchemy.schema import Column
from sqlalchemy.types import JSON, BigInteger, Boolean, DateTime, Integer, String, Uuid
from uuid_utils import uuid7


def new_id() -> str:
    return str(uuid7())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


JSONType = JSON().with_variant(JSONB, "postgresql")


class Base(DeclarativeBase):
    pass


class Room(Base):
    __tablename__ = "rooms"
    room_id = Column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    code = Column(String(5), nullable=False, index=True)
    host_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default="waiting")
    current_players = Column(Integer, nullable=False, default=1)
    max_players = Column(Integer, nullable=False, default=2)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    started_at = Column(DateTime(timezone=True), nullable=True)

    room_players = relationship(
        "RoomPlayer",
        back_populates="room",
        cascade="all, delete",
        order_by="RoomPlayer.player_number",
    )


class RoomPlayer(Base):
    __tablename__ = "room_players"
    __table_args__ = (
        UniqueConstraint("room_id", "player_number"),
        UniqueConstraint("room_id", "player_id"),
    )
    room_player_id = Column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    room_id = Column(Uuid(as_uuid=False), ForeignKey("rooms.room_id"), nullable=False)
    player_id = Column(String, nullable=False)
    username = Column(String, nullable=False)
    player_number = Column(Integer, nullable=False)
    is_ready = Column(Boolean, nullable=False, default=False)
    health = Column(Integer, nullable=False, default=100)
    last_heartbeat = Column(DateTime(timezone=True), default=utc_now)

    room = relationship("Room", back_populates="room_players")


class Action(Base):
    __tablename__ = "actions"
    action_id = Column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    room_id = Column(Uuid(as_uuid=False), ForeignKey("rooms.room_id"), nullable=False, index=True)
    player_id = Column(String, nullable=False)
    action_type = Column(String, nullable=False)
    action_data = Column(JSONType, nullable=False)
    sequence_number = Column(Integer, nullable=False)
    timestamp = Column(DateTime(timezone=True), default=utc_now)


class State(Base):
    __tablename__ = "states"
    state_id = Column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    room_id = Column(Uuid(as_uuid=False), ForeignKey("rooms.room_id"), nullable=False, index=True)
    game_tick = Column(BigInteger, nullable=False)
    state_data = Column(JSONType, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)

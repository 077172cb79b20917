"""
SQLAlchemy persistence adapters.

Schema:
    members              - slot owners and their timezone
    projects             - groups that own rehearsals
    project_members      - membership roster with active/inactive status
    rehearsals           - group events with a UTC window
    rehearsal_responses  - RSVP rows referencing a rehearsal
    availability_slots   - the ledger; cascades when its owner is deleted

Datetimes are stored as naive UTC and come back as pendulum ``DateTime``
objects in UTC, so SQLite and PostgreSQL behave the same.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Collection, Dict, Iterator, List, Sequence

import pendulum
from pendulum import DateTime
from sqlalchemy import (
    Boolean,
    DateTime as SADateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    create_engine,
    delete,
    event,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from ..domain.exceptions import OwnerNotFound, ProjectNotFound, RehearsalNotFound
from ..domain.models import (
    AvailabilitySlot,
    MembershipStatus,
    Rehearsal,
    SlotKind,
    SlotSource,
)

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator):
    """
    Datetime column holding UTC instants.

    Values are normalised to naive UTC on the way in and re-attached to UTC
    on the way out.
    """

    impl = SADateTime
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return value
        return pendulum.instance(value).in_timezone("UTC").naive()

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return value
        return pendulum.instance(value, tz="UTC").in_timezone("UTC")


def _utcnow() -> DateTime:
    return pendulum.now("UTC")


class MemberRow(Base):
    __tablename__ = "members"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)


class ProjectRow(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)


class MembershipRow(Base):
    __tablename__ = "project_members"

    project_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("members.id", ondelete="CASCADE"), primary_key=True
    )
    status: Mapped[str] = mapped_column(String(16), default=MembershipStatus.ACTIVE.value)


class RehearsalRow(Base):
    __tablename__ = "rehearsals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime())
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime())
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def to_domain(self) -> Rehearsal:
        return Rehearsal(
            id=self.id,
            project_id=self.project_id,
            starts_at=self.starts_at,
            ends_at=self.ends_at,
            title=self.title,
            location=self.location,
        )


class ResponseRow(Base):
    __tablename__ = "rehearsal_responses"

    # No ON DELETE: responses must be removed before their rehearsal.
    rehearsal_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("rehearsals.id"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("members.id", ondelete="CASCADE"), primary_key=True
    )
    response: Mapped[str] = mapped_column(String(16), default="yes")


class SlotRow(Base):
    __tablename__ = "availability_slots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("members.id", ondelete="CASCADE"), nullable=False
    )
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    # Opaque key (e.g. a rehearsal id); deliberately not a foreign key.
    external_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_all_day: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)

    __table_args__ = (
        Index("idx_slots_owner_source_start", "owner_id", "source", "starts_at"),
        Index("idx_slots_source_ref", "source", "external_ref"),
    )

    @classmethod
    def from_domain(cls, slot: AvailabilitySlot) -> "SlotRow":
        return cls(
            owner_id=slot.owner_id,
            starts_at=slot.starts_at,
            ends_at=slot.ends_at,
            kind=slot.kind.value,
            source=slot.source.value,
            external_ref=slot.external_ref,
            title=slot.title,
            notes=slot.notes,
            is_all_day=slot.is_all_day,
            created_at=slot.created_at or _utcnow(),
        )

    def to_domain(self) -> AvailabilitySlot:
        return AvailabilitySlot(
            id=str(self.id),
            owner_id=self.owner_id,
            starts_at=pendulum.instance(self.starts_at).in_timezone("UTC"),
            ends_at=pendulum.instance(self.ends_at).in_timezone("UTC"),
            kind=SlotKind(self.kind),
            source=SlotSource(self.source),
            external_ref=self.external_ref,
            title=self.title,
            notes=self.notes,
            is_all_day=bool(self.is_all_day),
            created_at=self.created_at,
        )


def create_db_engine(database_url: str, **kwargs: Any) -> Engine:
    """
    Create an engine.

    SQLite connections get foreign keys switched on so the owner cascade
    works there too. They also open every transaction with
    ``BEGIN IMMEDIATE``, which takes the database write lock up front; that is
    the closest SQLite gets to ``SELECT ... FOR UPDATE``.
    """
    engine = create_engine(database_url, **kwargs)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _configure_connection(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
            # Let SQLAlchemy emit BEGIN itself instead of pysqlite
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


# Sessions opened by SqlRehearsalStore.locked, per thread and session factory.
_bound = threading.local()


def _bound_sessions() -> Dict[int, Session]:
    sessions = getattr(_bound, "sessions", None)
    if sessions is None:
        sessions = _bound.sessions = {}
    return sessions


@contextmanager
def _transaction(session_factory: sessionmaker) -> Iterator[Session]:
    """
    Run a unit of work.

    Inside ``SqlRehearsalStore.locked`` on the same thread and session factory
    the work joins the locked transaction; otherwise it gets one of its own.
    """
    session = _bound_sessions().get(id(session_factory))
    if session is not None:
        yield session
        session.flush()
        return

    with session_factory.begin() as session:
        yield session


def _bulk_delete(model):
    return delete(model).execution_options(synchronize_session=False)


def _scope_filter(owner_id: str, source: SlotSource, window_start: DateTime, window_end: DateTime):
    return (
        SlotRow.owner_id == owner_id,
        SlotRow.source == SlotSource(source).value,
        SlotRow.starts_at >= window_start,
        SlotRow.starts_at < window_end,
    )


class SqlSlotStore:
    """Slot store over a relational database; every call is one transaction."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def add(self, slot: AvailabilitySlot) -> AvailabilitySlot:
        try:
            with _transaction(self._session_factory) as session:
                row = SlotRow.from_domain(slot)
                session.add(row)
                session.flush()
                return row.to_domain()
        except IntegrityError as exc:
            raise OwnerNotFound(slot.owner_id) from exc

    def replace_scope(
        self,
        owner_id: str,
        source: SlotSource,
        window_start: DateTime,
        window_end: DateTime,
        slots: Sequence[AvailabilitySlot],
    ) -> List[AvailabilitySlot]:
        try:
            with _transaction(self._session_factory) as session:
                session.execute(
                    _bulk_delete(SlotRow).where(*_scope_filter(owner_id, source, window_start, window_end))
                )
                rows = [SlotRow.from_domain(slot) for slot in slots]
                session.add_all(rows)
                session.flush()
                return [row.to_domain() for row in rows]
        except IntegrityError as exc:
            raise OwnerNotFound(owner_id) from exc

    def delete_scope(
        self,
        owner_id: str,
        source: SlotSource,
        window_start: DateTime,
        window_end: DateTime,
    ) -> int:
        with _transaction(self._session_factory) as session:
            result = session.execute(
                _bulk_delete(SlotRow).where(*_scope_filter(owner_id, source, window_start, window_end))
            )
            return result.rowcount or 0

    def delete_by_ref(self, source: SlotSource, external_ref: str) -> int:
        with _transaction(self._session_factory) as session:
            result = session.execute(
                _bulk_delete(SlotRow).where(
                    SlotRow.source == SlotSource(source).value,
                    SlotRow.external_ref == str(external_ref),
                )
            )
            return result.rowcount or 0

    def find_by_ref(self, source: SlotSource, external_ref: str) -> List[AvailabilitySlot]:
        with _transaction(self._session_factory) as session:
            rows = session.scalars(
                select(SlotRow)
                .where(
                    SlotRow.source == SlotSource(source).value,
                    SlotRow.external_ref == str(external_ref),
                )
                .order_by(SlotRow.starts_at, SlotRow.id)
            ).all()
            return [row.to_domain() for row in rows]

    def find_overlapping(
        self,
        owner_id: str,
        window_start: DateTime,
        window_end: DateTime,
        sources: Collection[SlotSource] | None = None,
    ) -> List[AvailabilitySlot]:
        query = select(SlotRow).where(
            SlotRow.owner_id == owner_id,
            SlotRow.starts_at < window_end,
            SlotRow.ends_at > window_start,
        )
        if sources is not None:
            query = query.where(SlotRow.source.in_([SlotSource(s).value for s in sources]))

        with _transaction(self._session_factory) as session:
            rows = session.scalars(query.order_by(SlotRow.starts_at, SlotRow.id)).all()
            return [row.to_domain() for row in rows]


class SqlDirectory:
    """Members, projects and memberships; implements the profile and membership providers."""

    def __init__(self, session_factory: sessionmaker, default_timezone: str = "UTC") -> None:
        self._session_factory = session_factory
        self.default_timezone = default_timezone

    def add_member(self, user_id: str, timezone: str | None = None) -> None:
        with _transaction(self._session_factory) as session:
            session.merge(MemberRow(id=str(user_id), timezone=timezone))

    def remove_member(self, user_id: str) -> None:
        """Delete a member; the schema cascades to their slots and memberships."""
        with _transaction(self._session_factory) as session:
            row = session.get(MemberRow, str(user_id))
            if row is None:
                raise OwnerNotFound(str(user_id))
            session.delete(row)

    def add_project(self, project_id: str, name: str | None = None) -> None:
        with _transaction(self._session_factory) as session:
            session.merge(ProjectRow(id=str(project_id), name=name))

    def set_membership(
        self,
        project_id: str,
        user_id: str,
        status: MembershipStatus | str = MembershipStatus.ACTIVE,
    ) -> None:
        """
        Add a member to a project's roster or change their status.

        Raises:
            ProjectNotFound: If the project does not exist
            OwnerNotFound: If the member does not exist
        """
        with _transaction(self._session_factory) as session:
            if session.get(ProjectRow, str(project_id)) is None:
                raise ProjectNotFound(str(project_id))
            if session.get(MemberRow, str(user_id)) is None:
                raise OwnerNotFound(str(user_id))
            session.merge(
                MembershipRow(
                    project_id=str(project_id),
                    user_id=str(user_id),
                    status=MembershipStatus(status).value,
                )
            )

    def timezone(self, user_id: str) -> str:
        with _transaction(self._session_factory) as session:
            row = session.get(MemberRow, str(user_id))
            if row is None:
                raise OwnerNotFound(str(user_id))
            return row.timezone or self.default_timezone

    def active_members(self, project_id: str) -> List[str]:
        with _transaction(self._session_factory) as session:
            return list(
                session.scalars(
                    select(MembershipRow.user_id)
                    .where(
                        MembershipRow.project_id == str(project_id),
                        MembershipRow.status == MembershipStatus.ACTIVE.value,
                    )
                    .order_by(MembershipRow.user_id)
                ).all()
            )


class SqlRehearsalStore:
    """Rehearsal rows and RSVP responses; implements the rehearsal and response stores."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @contextmanager
    def locked(self, rehearsal_id: str) -> Iterator[None]:
        """
        Hold the rehearsal row for the duration of the block.

        Store calls made inside the block on this thread through the same
        session factory share its transaction, so the block commits or rolls
        back as a whole. Nested calls join the outer block.
        """
        sessions = _bound_sessions()
        key = id(self._session_factory)
        if key in sessions:
            yield
            return

        with self._session_factory.begin() as session:
            session.execute(
                select(RehearsalRow.id)
                .where(RehearsalRow.id == str(rehearsal_id))
                .with_for_update()
            )
            sessions[key] = session
            try:
                yield
            finally:
                del sessions[key]

    def save(self, rehearsal: Rehearsal) -> Rehearsal:
        """
        Insert or update a rehearsal row.

        Raises:
            ProjectNotFound: If the rehearsal's project does not exist
        """
        with _transaction(self._session_factory) as session:
            if session.get(ProjectRow, str(rehearsal.project_id)) is None:
                raise ProjectNotFound(str(rehearsal.project_id))
            session.merge(
                RehearsalRow(
                    id=rehearsal.id,
                    project_id=rehearsal.project_id,
                    starts_at=rehearsal.starts_at,
                    ends_at=rehearsal.ends_at,
                    title=rehearsal.title,
                    location=rehearsal.location,
                )
            )
        return rehearsal

    def get(self, rehearsal_id: str) -> Rehearsal:
        with _transaction(self._session_factory) as session:
            row = session.get(RehearsalRow, str(rehearsal_id))
            if row is None:
                raise RehearsalNotFound(str(rehearsal_id))
            return row.to_domain()

    def delete(self, rehearsal_id: str) -> None:
        with _transaction(self._session_factory) as session:
            session.execute(_bulk_delete(RehearsalRow).where(RehearsalRow.id == str(rehearsal_id)))

    def respond(self, rehearsal_id: str, user_id: str, response: str = "yes") -> None:
        with _transaction(self._session_factory) as session:
            if session.get(RehearsalRow, str(rehearsal_id)) is None:
                raise RehearsalNotFound(str(rehearsal_id))
            if session.get(MemberRow, str(user_id)) is None:
                raise OwnerNotFound(str(user_id))
            session.merge(
                ResponseRow(rehearsal_id=str(rehearsal_id), user_id=str(user_id), response=response)
            )

    def responses_for(self, rehearsal_id: str) -> dict:
        with _transaction(self._session_factory) as session:
            rows = session.scalars(
                select(ResponseRow).where(ResponseRow.rehearsal_id == str(rehearsal_id))
            ).all()
            return {row.user_id: row.response for row in rows}

    def delete_for_rehearsal(self, rehearsal_id: str) -> int:
        with _transaction(self._session_factory) as session:
            result = session.execute(
                _bulk_delete(ResponseRow).where(ResponseRow.rehearsal_id == str(rehearsal_id))
            )
            return result.rowcount or 0

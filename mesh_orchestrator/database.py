"""SQLite ledger of orchestration runs and the stacks they converged."""

import json
from datetime import datetime
from functools import lru_cache
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    relationship,
    selectinload,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool

from mesh_orchestrator.config_map import ConfigMap, redact
from mesh_orchestrator.models import RunStatus, StackDescriptor
from mesh_orchestrator.settings import get_settings


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class RunRecord(Base):
    """Database model for orchestration runs."""

    __tablename__ = "runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stack_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus), nullable=False, default=RunStatus.PENDING
    )
    clusters: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    stacks: Mapped[list["StackRunRecord"]] = relationship(
        back_populates="run", order_by="StackRunRecord.id"
    )


class StackRunRecord(Base):
    """Database model for one stack convergence within a run."""

    __tablename__ = "stack_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("runs.id"), nullable=False, index=True)
    resource_name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    project_name: Mapped[str] = mapped_column(String(100), nullable=False)
    stack_name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus), nullable=False, default=RunStatus.IN_PROGRESS
    )
    outputs: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    run: Mapped[RunRecord] = relationship(back_populates="stacks")


class Database:
    """Database operations."""

    def __init__(self, database_url: str = "sqlite:///./mesh_orchestrator.db"):
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, so every session sees the same in-memory database
            self.engine = create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(database_url, echo=False)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    def get_session(self) -> Session:
        return self.SessionLocal()

    # =========================================================================
    # RUN OPERATIONS
    # =========================================================================

    def create_run(self, stack_name: str, dry_run: bool) -> RunRecord:
        """Create a new run record."""
        with self.get_session() as session:
            record = RunRecord(stack_name=stack_name, dry_run=dry_run, status=RunStatus.PENDING)
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def get_run(self, run_id: int) -> Optional[RunRecord]:
        """Get a run with its stack records."""
        with self.get_session() as session:
            return (
                session.query(RunRecord)
                .options(selectinload(RunRecord.stacks))
                .filter_by(id=run_id)
                .first()
            )

    def list_runs(self, stack_name: Optional[str] = None) -> list[RunRecord]:
        """List runs, newest first."""
        with self.get_session() as session:
            query = session.query(RunRecord).options(selectinload(RunRecord.stacks))
            if stack_name:
                query = query.filter_by(stack_name=stack_name)
            return query.order_by(RunRecord.id.desc()).all()

    def active_run(self) -> Optional[RunRecord]:
        """The run currently pending or in progress, if any."""
        with self.get_session() as session:
            return (
                session.query(RunRecord)
                .filter(RunRecord.status.in_([RunStatus.PENDING, RunStatus.IN_PROGRESS]))
                .first()
            )

    def update_run_status(
        self,
        run_id: int,
        status: RunStatus,
        clusters: Optional[list[str]] = None,
        error_message: Optional[str] = None,
    ) -> Optional[RunRecord]:
        """Update run status."""
        with self.get_session() as session:
            record = session.query(RunRecord).filter_by(id=run_id).first()
            if not record:
                return None

            record.status = status
            record.updated_at = datetime.utcnow()

            if clusters is not None:
                record.clusters = json.dumps(clusters)
            if error_message:
                record.error_message = error_message

            session.commit()
            session.refresh(record)
            return record

    # =========================================================================
    # STACK OPERATIONS
    # =========================================================================

    def create_stack_run(self, run_id: int, resource_name: str, descriptor: StackDescriptor) -> StackRunRecord:
        """Record that a stack started converging."""
        with self.get_session() as session:
            record = StackRunRecord(
                run_id=run_id,
                resource_name=resource_name,
                project_name=descriptor.project_name,
                stack_name=descriptor.stack_name,
                status=RunStatus.IN_PROGRESS,
            )
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def finish_stack_run(
        self,
        stack_run_id: int,
        status: RunStatus,
        outputs: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> Optional[StackRunRecord]:
        """Record the outcome of a stack convergence."""
        with self.get_session() as session:
            record = session.query(StackRunRecord).filter_by(id=stack_run_id).first()
            if not record:
                return None

            record.status = status
            record.updated_at = datetime.utcnow()

            if outputs is not None:
                record.outputs = json.dumps(outputs)
            if error_message:
                record.error_message = error_message

            session.commit()
            session.refresh(record)
            return record

    def stack_identities(self) -> dict[str, str]:
        """``project/stack`` identity last recorded for each stack resource."""
        with self.get_session() as session:
            records = session.query(StackRunRecord).order_by(StackRunRecord.id).all()
            return {r.resource_name: f"{r.project_name}/{r.stack_name}" for r in records}


class RunLedger:
    """Records the stacks of one run; secret outputs are stored redacted."""

    def __init__(self, database: Database, run_id: int):
        self.database = database
        self.run_id = run_id

    def stack_started(self, resource_name: str, descriptor: StackDescriptor) -> int:
        return self.database.create_stack_run(self.run_id, resource_name, descriptor).id

    def stack_finished(
        self,
        token: int,
        status: RunStatus,
        outputs: Optional[ConfigMap] = None,
        error_message: Optional[str] = None,
    ) -> None:
        self.database.finish_stack_run(
            token,
            status,
            outputs=redact(outputs) if outputs is not None else None,
            error_message=error_message,
        )


@lru_cache
def get_database() -> Database:
    """Get cached database instance."""
    return Database(get_settings().database_url)

"""SQLite database for organizations and their embedded cluster records."""

import uuid
from datetime import datetime
from functools import lru_cache
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, String, create_engine
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    sessionmaker,
)

from fleet.models import ClusterRecord, Organization
from fleet.settings import get_settings

CLUSTER_FIELD = "doks"


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class OrganizationRecord(Base):
    """Database model for organizations."""

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    doks: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class Database:
    """Database operations."""

    def __init__(self, database_url: str = "sqlite:///./fleet.db"):
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_engine(database_url, echo=False, connect_args=connect_args)
        self.SessionLocal = sessionmaker(bind=self.engine)
        Base.metadata.create_all(self.engine)

    def get_session(self) -> Session:
        return self.SessionLocal()

    def create_organization(self, name: str, id: Optional[str] = None) -> Organization:
        """Create a new organization without a cluster."""
        with self.get_session() as session:
            record = OrganizationRecord(id=id or str(uuid.uuid4()), name=name)
            session.add(record)
            session.commit()
            session.refresh(record)
            return self._to_model(record)

    def get_organization(self, org_id: str) -> Optional[Organization]:
        """Get organization by id."""
        with self.get_session() as session:
            record = session.get(OrganizationRecord, org_id)
            return self._to_model(record) if record else None

    def list_organizations_with_cluster(self) -> list[Organization]:
        """List organizations whose cluster record has a provider cluster id."""
        with self.get_session() as session:
            records = (
                session.query(OrganizationRecord)
                .filter(OrganizationRecord.doks.is_not(None))
                .all()
            )
            return [
                self._to_model(r) for r in records if r.doks and r.doks.get("clusterId")
            ]

    def update_organization(self, org_id: str, fields: dict[str, Any]) -> Optional[Organization]:
        """Apply a partial update in one transaction.

        Keys of the form ``doks.<field>`` set one field of the embedded
        cluster record; ``doks`` replaces (or with None, clears) it.
        """
        prefix = f"{CLUSTER_FIELD}."
        with self.get_session() as session:
            record = session.get(OrganizationRecord, org_id)
            if not record:
                return None

            cluster = dict(record.doks or {})
            cluster_touched = False
            for key, value in fields.items():
                if key == CLUSTER_FIELD:
                    cluster = dict(value) if value is not None else None
                    cluster_touched = True
                elif key.startswith(prefix):
                    if cluster is None:
                        cluster = {}
                    cluster[key[len(prefix):]] = value
                    cluster_touched = True
                else:
                    setattr(record, key, value)

            if cluster_touched:
                # Reassign so the JSON column is flagged dirty
                record.doks = cluster
            record.updated_at = datetime.utcnow()

            session.commit()
            session.refresh(record)
            return self._to_model(record)

    def _to_model(self, record: OrganizationRecord) -> Organization:
        """Convert record to model."""
        return Organization(
            id=record.id,
            name=record.name,
            doks=ClusterRecord.model_validate(record.doks) if record.doks else None,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


@lru_cache
def get_database() -> Database:
    """Get the process-wide database."""
    return Database(get_settings().database_url)

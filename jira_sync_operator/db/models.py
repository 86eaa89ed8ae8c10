"""
SQLAlchemy models for declarative sync resources.

Each row stores one resource; spec and status are JSON in their wire form.
resource_version is the optimistic-concurrency token: every write bumps it,
and status writes only apply when the caller's version is still current.
"""

import uuid
from typing import Any, Dict

from sqlalchemy import Column, DateTime, Index, Integer, JSON, String, UniqueConstraint
from sqlalchemy.sql import func

from .base import Base


class SyncResourceModel(Base):
    """SQLAlchemy model for JIRASync resources."""

    __tablename__ = "sync_resources"

    uid = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    namespace = Column(String(253), nullable=False)
    name = Column(String(253), nullable=False)

    resource_version = Column(Integer, nullable=False, default=1)
    generation = Column(Integer, nullable=False, default=1)

    labels = Column(JSON, nullable=False, default=dict)
    annotations = Column(JSON, nullable=False, default=dict)
    finalizers = Column(JSON, nullable=False, default=list)

    spec = Column(JSON, nullable=False)
    status = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    deletion_timestamp = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("namespace", "name", name="uq_sync_resources_namespace_name"),
        Index("ix_sync_resources_namespace", "namespace"),
    )

    def to_wire(self) -> Dict[str, Any]:
        """Convert row to the resource's wire form."""
        metadata: Dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "uid": self.uid,
            "generation": self.generation,
            "resourceVersion": str(self.resource_version),
            "labels": dict(self.labels or {}),
            "annotations": dict(self.annotations or {}),
            "finalizers": list(self.finalizers or []),
            "creationTimestamp": self.created_at.isoformat() if self.created_at else None,
        }
        if self.deletion_timestamp is not None:
            metadata["deletionTimestamp"] = self.deletion_timestamp.isoformat()
        return {
            "metadata": metadata,
            "spec": self.spec,
            "status": self.status or {},
        }


class ApiEndpointModel(Base):
    """SQLAlchemy model for APIServer resources."""

    __tablename__ = "api_endpoints"

    uid = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    namespace = Column(String(253), nullable=False)
    name = Column(String(253), nullable=False)
    resource_version = Column(Integer, nullable=False, default=1)
    spec = Column(JSON, nullable=False, default=dict)
    status = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        UniqueConstraint("namespace", "name", name="uq_api_endpoints_namespace_name"),
    )

    def to_wire(self) -> Dict[str, Any]:
        return {
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "uid": self.uid,
                "resourceVersion": str(self.resource_version),
            },
            "spec": self.spec or {},
            "status": self.status or {},
        }

"""
SQL-backed resource store.

Status writes use the same optimistic pattern as a claim:

    UPDATE sync_resources
    SET status = :status, resource_version = resource_version + 1
    WHERE namespace = :ns AND name = :name AND resource_version = :expected

A rowcount of 0 means another writer got there first (or the row is gone).
Watches are emulated by polling and diffing resource versions.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import ConflictError, NotFoundError
from ..db.base import create_db_engine, get_session_factory, init_database
from ..db.models import ApiEndpointModel, SyncResourceModel
from .models import ApiEndpoint, SyncResource
from .store import ADDED, DELETED, MODIFIED, ResourceStore, StoreEvent

logger = logging.getLogger(__name__)


class SqlResourceStore(ResourceStore):
    """ResourceStore on SQLAlchemy (SQLite or PostgreSQL)."""

    def __init__(self, database_url: str, create_tables: bool = True, poll_interval: float = 1.0):
        self.engine = create_db_engine(database_url)
        self.session_factory = get_session_factory(self.engine)
        self.poll_interval = poll_interval
        if create_tables:
            init_database(self.engine)

    def _session(self) -> Session:
        return self.session_factory()

    @staticmethod
    def _row(db: Session, namespace: str, name: str) -> Optional[SyncResourceModel]:
        return (
            db.query(SyncResourceModel)
            .filter(SyncResourceModel.namespace == namespace, SyncResourceModel.name == name)
            .first()
        )

    @staticmethod
    def _to_resource(row: SyncResourceModel) -> SyncResource:
        return SyncResource.from_wire(row.to_wire())

    async def create(self, resource: SyncResource) -> SyncResource:
        wire = resource.to_wire()
        db = self._session()
        try:
            row = SyncResourceModel(
                namespace=resource.metadata.namespace,
                name=resource.metadata.name,
                labels=dict(resource.metadata.labels),
                annotations=dict(resource.metadata.annotations),
                finalizers=list(resource.metadata.finalizers),
                spec=wire["spec"],
                status=wire.get("status", {}),
                created_at=resource.metadata.creation_timestamp or datetime.now(timezone.utc),
            )
            if resource.metadata.uid:
                row.uid = resource.metadata.uid
            db.add(row)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ConflictError(
                    f'jirasyncs "{resource.metadata.name}" already exists',
                    operation="create",
                    resource=f"jirasyncs/{resource.metadata.name}",
                    cause=e,
                )
            db.refresh(row)
            return self._to_resource(row)
        finally:
            db.close()

    async def get(self, namespace: str, name: str) -> SyncResource:
        db = self._session()
        try:
            row = self._row(db, namespace, name)
            if row is None:
                raise NotFoundError(
                    f'jirasyncs "{name}" not found in namespace "{namespace}"',
                    operation="get",
                    resource=f"jirasyncs/{name}",
                )
            return self._to_resource(row)
        finally:
            db.close()

    async def list(self, namespace: Optional[str] = None) -> List[SyncResource]:
        db = self._session()
        try:
            query = db.query(SyncResourceModel)
            if namespace is not None:
                query = query.filter(SyncResourceModel.namespace == namespace)
            rows = query.order_by(SyncResourceModel.namespace, SyncResourceModel.name).all()
            return [self._to_resource(row) for row in rows]
        finally:
            db.close()

    def _conditional_update(self, db: Session, resource: SyncResource, operation: str, values: Dict) -> None:
        try:
            expected = int(resource.metadata.resource_version)
        except ValueError:
            expected = -1

        result = db.execute(
            update(SyncResourceModel)
            .where(
                SyncResourceModel.namespace == resource.metadata.namespace,
                SyncResourceModel.name == resource.metadata.name,
                SyncResourceModel.resource_version == expected,
            )
            .values(resource_version=SyncResourceModel.resource_version + 1, **values)
        )
        db.commit()

        if result.rowcount == 0:
            if self._row(db, resource.metadata.namespace, resource.metadata.name) is None:
                raise NotFoundError(
                    f'jirasyncs "{resource.metadata.name}" not found',
                    operation=operation,
                    resource=f"jirasyncs/{resource.metadata.name}",
                )
            logger.debug(f"Stale {operation} on {resource.key} at version {expected}")
            raise ConflictError(
                f'operation cannot be fulfilled on jirasyncs "{resource.metadata.name}": '
                "the object has been modified; please apply your changes to the latest version",
                operation=operation,
                resource=f"jirasyncs/{resource.metadata.name}",
            )

    async def update_status(self, resource: SyncResource) -> SyncResource:
        status = resource.to_wire().get("status", {})
        db = self._session()
        try:
            self._conditional_update(db, resource, "update status", {"status": status})
            return self._to_resource(self._row(db, resource.metadata.namespace, resource.metadata.name))
        finally:
            db.close()

    async def update_metadata(self, resource: SyncResource) -> SyncResource:
        db = self._session()
        try:
            self._conditional_update(
                db,
                resource,
                "update",
                {
                    "labels": dict(resource.metadata.labels),
                    "annotations": dict(resource.metadata.annotations),
                    "finalizers": list(resource.metadata.finalizers),
                },
            )
            row = self._row(db, resource.metadata.namespace, resource.metadata.name)
            if row.deletion_timestamp is not None and not row.finalizers:
                stored = self._to_resource(row)
                db.delete(row)
                db.commit()
                return stored
            return self._to_resource(row)
        finally:
            db.close()

    async def delete(self, namespace: str, name: str) -> None:
        db = self._session()
        try:
            row = self._row(db, namespace, name)
            if row is None:
                raise NotFoundError(
                    f'jirasyncs "{name}" not found', operation="delete", resource=f"jirasyncs/{name}"
                )
            if row.finalizers:
                if row.deletion_timestamp is None:
                    row.deletion_timestamp = datetime.now(timezone.utc)
                    row.resource_version = row.resource_version + 1
                    db.commit()
                return
            db.delete(row)
            db.commit()
        finally:
            db.close()

    async def watch(self, namespace: Optional[str] = None) -> AsyncIterator[StoreEvent]:
        seen: Dict[str, SyncResource] = {}
        first = True
        while True:
            current = {r.key: r for r in await self.list(namespace)}
            if not first:
                for key, resource in current.items():
                    previous = seen.get(key)
                    if previous is None:
                        yield StoreEvent(type=ADDED, resource=resource)
                    elif previous.metadata.resource_version != resource.metadata.resource_version:
                        yield StoreEvent(type=MODIFIED, resource=resource)
                for key in set(seen) - set(current):
                    yield StoreEvent(type=DELETED, resource=seen[key])
            seen = current
            first = False
            await asyncio.sleep(self.poll_interval)

    async def list_endpoints(self, namespace: str) -> List[ApiEndpoint]:
        db = self._session()
        try:
            rows = (
                db.query(ApiEndpointModel)
                .filter(ApiEndpointModel.namespace == namespace)
                .order_by(ApiEndpointModel.name)
                .all()
            )
            return [ApiEndpoint.from_wire(row.to_wire()) for row in rows]
        finally:
            db.close()

    async def put_endpoint(self, endpoint: ApiEndpoint) -> ApiEndpoint:
        wire = endpoint.to_wire()
        db = self._session()
        try:
            row = (
                db.query(ApiEndpointModel)
                .filter(
                    ApiEndpointModel.namespace == endpoint.metadata.namespace,
                    ApiEndpointModel.name == endpoint.metadata.name,
                )
                .first()
            )
            if row is None:
                row = ApiEndpointModel(
                    namespace=endpoint.metadata.namespace,
                    name=endpoint.metadata.name,
                )
                db.add(row)
            else:
                row.resource_version = row.resource_version + 1
            row.spec = wire.get("spec", {})
            row.status = wire.get("status", {})
            db.commit()
            db.refresh(row)
            return ApiEndpoint.from_wire(row.to_wire())
        finally:
            db.close()

    async def close(self) -> None:
        self.engine.dispose()

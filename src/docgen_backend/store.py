"""
Record store client used by the poller.

``RecordStoreClient`` is the interface the worker depends on. ``DocgenStore``
implements it on top of the SQLite work item table and a content store.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Protocol, Union

from .content_store import LocalContentStore, S3ContentStore
from .database import WorkItemDatabase, utcnow
from .models import WorkItem


class RecordStoreClient(Protocol):
    def fetch_candidates(self, limit: int) -> List[WorkItem]:
        ...

    def try_lock(self, work_item_id: str, lease_until: datetime, correlation_id: str) -> bool:
        ...

    def update_status(self, work_item_id: str, fields: Mapping[str, Any]) -> None:
        ...

    def download_content(self, content_id: str) -> bytes:
        ...

    def upload_content(self, data: bytes, name: str) -> str:
        ...


class DocgenStore:
    """
    Work item records plus content storage behind one client.

    Args:
        database: Work item table
        content: Template and output storage
        clock: Returns the current UTC time; injectable for tests
    """

    def __init__(
        self,
        database: WorkItemDatabase,
        content: Union[S3ContentStore, LocalContentStore],
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.database = database
        self.content = content
        self.clock = clock or utcnow

    def fetch_candidates(self, limit: int) -> List[WorkItem]:
        return self.database.fetch_candidates(limit, now=self.clock())

    def try_lock(self, work_item_id: str, lease_until: datetime, correlation_id: str) -> bool:
        return self.database.try_lock(work_item_id, lease_until, correlation_id, now=self.clock())

    def update_status(self, work_item_id: str, fields: Mapping[str, Any]) -> None:
        self.database.update_status(work_item_id, fields, now=self.clock())

    def download_content(self, content_id: str) -> bytes:
        return self.content.download_content(content_id)

    def upload_content(self, data: bytes, name: str) -> str:
        return self.content.upload_content(data, name)

    def ping(self) -> bool:
        return self.database.ping() and self.content.ping()

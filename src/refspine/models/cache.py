"""Cache metadata and cached external payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from refspine.core.timestamps import from_iso8601, to_iso8601
from refspine.models.enums import SyncStatus


@dataclass
class CacheMetadata:
    """Freshness bookkeeping attached to every cached record.

    ``expiry`` is the only freshness signal: a record is fresh while
    ``now < expiry``. ``retry_after`` suppresses refetching after a failure.
    """

    last_fetched: datetime | None = None
    expiry: datetime | None = None
    change_token: str | None = None
    sync_status: SyncStatus = SyncStatus.CURRENT
    source_version: str | None = None
    last_error: str | None = None
    retry_after: datetime | None = None

    def is_fresh(self, now: datetime) -> bool:
        return self.expiry is not None and now < self.expiry

    def in_error_backoff(self, now: datetime) -> bool:
        return self.retry_after is not None and now < self.retry_after

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_fetched": to_iso8601(self.last_fetched),
            "expiry": to_iso8601(self.expiry),
            "change_token": self.change_token,
            "sync_status": self.sync_status.value,
            "source_version": self.source_version,
            "last_error": self.last_error,
            "retry_after": to_iso8601(self.retry_after),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CacheMetadata:
        data = data or {}
        return cls(
            last_fetched=from_iso8601(data.get("last_fetched")),
            expiry=from_iso8601(data.get("expiry")),
            change_token=data.get("change_token"),
            sync_status=SyncStatus(data.get("sync_status", "current")),
            source_version=data.get("source_version"),
            last_error=data.get("last_error"),
            retry_after=from_iso8601(data.get("retry_after")),
        )


@dataclass
class CacheEntry:
    """An external feature payload held locally.

    Keyed by ``(collection, item_id)``. ``dependents`` lists the local
    feature ids whose associations point at this entry, so an invalidation
    can fan out to them.

    ``version`` is the store's write counter and the compare-and-set key;
    ``last_modified`` moves only when the payload content changes.
    """

    collection: str
    item_id: str
    payload: dict[str, Any] | None = None
    change_token: str | None = None
    content_hash: str | None = None
    last_fetched: datetime | None = None
    expiry: datetime | None = None
    last_modified: datetime | None = None
    sync_status: SyncStatus = SyncStatus.CURRENT
    last_error: str | None = None
    retry_after: datetime | None = None
    dependents: list[str] = field(default_factory=list)
    href: str | None = None
    version: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.collection, self.item_id)

    @property
    def geometry(self) -> dict[str, Any] | None:
        if not self.payload:
            return None
        return self.payload.get("geometry")

    def is_fresh(self, now: datetime) -> bool:
        return self.expiry is not None and now < self.expiry

    def in_error_backoff(self, now: datetime) -> bool:
        return self.retry_after is not None and now < self.retry_after

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "item_id": self.item_id,
            "payload": self.payload,
            "change_token": self.change_token,
            "content_hash": self.content_hash,
            "last_fetched": to_iso8601(self.last_fetched),
            "expiry": to_iso8601(self.expiry),
            "last_modified": to_iso8601(self.last_modified),
            "sync_status": self.sync_status.value,
            "last_error": self.last_error,
            "retry_after": to_iso8601(self.retry_after),
            "dependents": list(self.dependents),
            "href": self.href,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            collection=data["collection"],
            item_id=data["item_id"],
            payload=data.get("payload"),
            change_token=data.get("change_token"),
            content_hash=data.get("content_hash"),
            last_fetched=from_iso8601(data.get("last_fetched")),
            expiry=from_iso8601(data.get("expiry")),
            last_modified=from_iso8601(data.get("last_modified")),
            sync_status=SyncStatus(data.get("sync_status", "current")),
            last_error=data.get("last_error"),
            retry_after=from_iso8601(data.get("retry_after")),
            dependents=list(data.get("dependents", [])),
            href=data.get("href"),
            version=int(data.get("version", 0)),
        )

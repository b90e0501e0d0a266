# User value: This file keeps every in-flight upload and review in one keyed place so a user's item is never overwritten by two operations at once.
import json
import logging
from typing import Dict, List, Optional

from schemas.models import ReviewRecord, UploadItem, utcnow
from schemas.pipeline_contract import UPLOAD_COMPLETE, UPLOAD_ERROR, UPLOAD_TRANSFERRING
from utils.errors import InvalidTransitionError, NotFoundError, OwnershipError
from utils.status_machine import REVIEW_TRANSITIONS, UPLOAD_TRANSITIONS, ensure_transition

logger = logging.getLogger("api.store")


class MemoryBackend:
    """Process-local backend. Fine for one API instance and for tests."""

    def __init__(self) -> None:
        self._rows: Dict[str, dict] = {}
        self._owners: Dict[str, str] = {}
        self._indexes: Dict[str, List[str]] = {}

    async def load(self, key: str) -> Optional[dict]:
        row = self._rows.get(key)
        return json.loads(json.dumps(row)) if row is not None else None

    async def save(self, key: str, data: dict, *, status: str) -> None:
        self._rows[key] = json.loads(json.dumps(data))

    async def claim(self, key: str, owner: str) -> None:
        current = self._owners.get(key)
        if current and current != owner:
            raise OwnershipError(f"{key} is being processed by another operation", key=key)
        self._owners[key] = owner

    async def release(self, key: str, owner: str) -> None:
        if self._owners.get(key) == owner:
            del self._owners[key]

    async def owner_of(self, key: str) -> Optional[str]:
        return self._owners.get(key)

    async def add_to_index(self, index_key: str, member: str) -> None:
        members = self._indexes.setdefault(index_key, [])
        if member not in members:
            members.insert(0, member)

    async def members(self, index_key: str) -> List[str]:
        return list(self._indexes.get(index_key, []))

    async def ping(self) -> bool:
        return True


class RedisBackend:
    """Redis hashes per record plus an owner key taken with SET NX EX."""

    def __init__(self, client, *, prefix: str, owner_ttl_sec: int = 900) -> None:
        self.r = client
        self.prefix = prefix
        self.owner_ttl_sec = owner_ttl_sec

    def _row_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def _owner_key(self, key: str) -> str:
        return f"{self.prefix}_owner:{key}"

    def _index_key(self, index_key: str) -> str:
        return f"{self.prefix}_index:{index_key}"

    async def load(self, key: str) -> Optional[dict]:
        raw = await self.r.hget(self._row_key(key), "data")
        if not raw:
            return None
        return json.loads(raw)

    async def save(self, key: str, data: dict, *, status: str) -> None:
        await self.r.hset(
            self._row_key(key),
            mapping={
                "data": json.dumps(data, ensure_ascii=False),
                "status": status,
                "updated_at": utcnow().isoformat(),
            },
        )

    async def claim(self, key: str, owner: str) -> None:
        acquired = await self.r.set(self._owner_key(key), owner, nx=True, ex=self.owner_ttl_sec)
        if acquired:
            return
        current = await self.r.get(self._owner_key(key))
        if current != owner:
            raise OwnershipError(f"{key} is being processed by another operation", key=key)

    async def release(self, key: str, owner: str) -> None:
        current = await self.r.get(self._owner_key(key))
        if current == owner:
            await self.r.delete(self._owner_key(key))

    async def owner_of(self, key: str) -> Optional[str]:
        return await self.r.get(self._owner_key(key))

    async def add_to_index(self, index_key: str, member: str) -> None:
        members = await self.members(index_key)
        if member not in members:
            await self.r.lpush(self._index_key(index_key), member)

    async def members(self, index_key: str) -> List[str]:
        return list(await self.r.lrange(self._index_key(index_key), 0, -1) or [])

    async def ping(self) -> bool:
        return bool(await self.r.ping())


class UploadItemStore:
    """Keyed store of UploadItems. Writes require the caller to own the item id."""

    def __init__(self, backend=None) -> None:
        self.backend = backend or MemoryBackend()

    async def find(self, item_id: str) -> Optional[UploadItem]:
        row = await self.backend.load(item_id)
        return UploadItem.from_dict(row) if row else None

    async def get(self, item_id: str) -> UploadItem:
        item = await self.find(item_id)
        if item is None:
            raise NotFoundError("Upload item not found", item_id=item_id)
        return item

    async def claim(self, item_id: str, owner: str) -> None:
        await self.backend.claim(item_id, owner)

    async def release(self, item_id: str, owner: str) -> None:
        await self.backend.release(item_id, owner)

    async def create(self, item: UploadItem, *, owner: str) -> UploadItem:
        existing = await self.find(item.item_id)
        ensure_transition(
            UPLOAD_TRANSITIONS,
            existing.status if existing else None,
            item.status,
            context="UPLOAD_CREATE",
            entity_id=item.item_id,
        )
        await self.backend.claim(item.item_id, owner)
        await self.backend.save(item.item_id, item.to_dict(), status=item.status)
        return item.copy()

    # User value: applies one status/progress change atomically per owner so the item always satisfies its invariants.
    async def update(self, item_id: str, *, owner: str, **changes) -> UploadItem:
        holder = await self.backend.owner_of(item_id)
        if holder != owner:
            raise OwnershipError("Upload item is owned by another operation", item_id=item_id)

        item = await self.get(item_id)
        target = changes.get("status", item.status)
        if "status" in changes and target != item.status:
            ensure_transition(UPLOAD_TRANSITIONS, item.status, target, context="UPLOAD_UPDATE", entity_id=item_id)

        if "progress" in changes:
            progress = int(changes["progress"])
            if progress < 0 or progress > 100:
                raise InvalidTransitionError("Progress must be within 0..100", item_id=item_id)
            if target == UPLOAD_TRANSFERRING and item.status == UPLOAD_TRANSFERRING and progress < item.progress:
                raise InvalidTransitionError("Progress cannot decrease while transferring", item_id=item_id)

        for name, value in changes.items():
            setattr(item, name, value)

        if item.status != UPLOAD_ERROR:
            item.error_detail = None
        if (item.server_document_id is not None) != (item.status == UPLOAD_COMPLETE):
            raise InvalidTransitionError(
                "server_document_id must be set exactly when the item is complete",
                item_id=item_id,
                current=item.status,
            )

        item.updated_at = utcnow()
        await self.backend.save(item_id, item.to_dict(), status=item.status)
        return item.copy()


class ReviewRecordStore:
    def __init__(self, backend=None) -> None:
        self.backend = backend or MemoryBackend()

    async def find(self, review_id: str) -> Optional[ReviewRecord]:
        row = await self.backend.load(review_id)
        return ReviewRecord.from_dict(row) if row else None

    async def get(self, review_id: str) -> ReviewRecord:
        record = await self.find(review_id)
        if record is None:
            raise NotFoundError("Review not found", review_id=review_id)
        return record

    async def create(self, record: ReviewRecord) -> ReviewRecord:
        ensure_transition(REVIEW_TRANSITIONS, None, record.state, context="REVIEW_CREATE", entity_id=record.review_id)
        await self.backend.save(record.review_id, record.to_dict(), status=record.state)
        await self.backend.add_to_index(record.document_id, record.review_id)
        return record.copy()

    async def save(self, record: ReviewRecord, *, previous_state: str) -> ReviewRecord:
        if record.state != previous_state:
            ensure_transition(
                REVIEW_TRANSITIONS,
                previous_state,
                record.state,
                context="REVIEW_SAVE",
                entity_id=record.review_id,
            )
        record.updated_at = utcnow()
        await self.backend.save(record.review_id, record.to_dict(), status=record.state)
        return record.copy()

    async def for_document(self, document_id: str) -> List[ReviewRecord]:
        records = []
        for review_id in await self.backend.members(document_id):
            record = await self.find(review_id)
            if record is not None:
                records.append(record)
        return records

    async def claim(self, review_id: str, owner: str) -> None:
        await self.backend.claim(review_id, owner)

    async def release(self, review_id: str, owner: str) -> None:
        await self.backend.release(review_id, owner)

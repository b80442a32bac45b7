"""
Hidden content cache.

The provider pushes story updates for peers whose stories we cannot list
directly (hidden peers, close-friends items). Those pushes are the only
full copy we ever see, so they are kept here until the story expires and
merged into later live fetches.

Pruning is lazy: every write and read first deletes expired rows.
"""

import json
import logging
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from ..core.database import insert_for
from ..domain.content import ContentItem
from ..domain.errors import PersistenceError
from ..models.hidden_cache import HiddenCacheEntry
from .job_store import SessionFactory

logger = logging.getLogger(__name__)

# Story lifetime when the provider omits expire_date
DEFAULT_TTL_SECONDS = 24 * 3600


class ContentCodec(Protocol):
    def encode(self, item: ContentItem) -> bytes: ...

    def decode(self, data: bytes) -> ContentItem: ...


class JsonContentCodec:
    """Serializes plain-data items; media must be JSON-compatible."""

    def encode(self, item: ContentItem) -> bytes:
        return json.dumps(item.to_dict()).encode("utf-8")

    def decode(self, data: bytes) -> ContentItem:
        return ContentItem.from_dict(json.loads(data.decode("utf-8")))


class HiddenContentCache:
    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        codec: Optional[ContentCodec] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if session_factory is None:
            from ..core.database import get_db_session

            session_factory = get_db_session
        self._session_factory = session_factory
        self.codec = codec or JsonContentCodec()
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    @staticmethod
    def expiry_of(item: ContentItem) -> int:
        if item.expire_date:
            return int(item.expire_date)
        return int(item.date) + DEFAULT_TTL_SECONDS

    # -- writes -----------------------------------------------------------

    async def upsert(self, peer_id: str, access_hash: Optional[str], item: ContentItem) -> bool:
        """Store or refresh one pushed item.

        Returns:
            False if the item was ignored (no media, or already expired)
        """
        if not item.has_media or item.is_min:
            return False
        expires_at = self.expiry_of(item)
        if expires_at <= self._now():
            return False

        snapshot = self.codec.encode(replace(item, peer_id=peer_id))
        values = {
            "peer_id": peer_id,
            "content_id": item.id,
            "access_hash": access_hash,
            "snapshot": snapshot,
            "content_date": int(item.date),
            "expires_at": expires_at,
        }

        try:
            async with self._session_factory() as session:
                stmt = insert_for(session, HiddenCacheEntry).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[HiddenCacheEntry.peer_id, HiddenCacheEntry.content_id],
                    set_={
                        "access_hash": stmt.excluded.access_hash,
                        "snapshot": stmt.excluded.snapshot,
                        "content_date": stmt.excluded.content_date,
                        "expires_at": stmt.excluded.expires_at,
                    },
                )
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Hidden cache upsert failed: {e}") from e

        logger.debug("Cached hidden story %s for peer %s", item.id, peer_id)
        await self.prune_expired()
        return True

    async def handle_push(
        self,
        peer_id: str,
        access_hash: Optional[str],
        item: Optional[ContentItem] = None,
        deleted_id: Optional[int] = None,
    ) -> None:
        """Entry point for provider push events."""
        if deleted_id is not None:
            await self.remove(peer_id, deleted_id)
        if item is None:
            await self.prune_expired()
            return
        await self.upsert(peer_id, access_hash, item)

    async def remove(self, peer_id: str, content_id: int) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(HiddenCacheEntry).where(
                        HiddenCacheEntry.peer_id == peer_id,
                        HiddenCacheEntry.content_id == content_id,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Hidden cache delete failed: {e}") from e

    async def prune_expired(self) -> int:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(HiddenCacheEntry).where(HiddenCacheEntry.expires_at <= self._now())
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Hidden cache prune failed: {e}") from e
        if result.rowcount:
            logger.debug("Pruned %d expired hidden cache entries", result.rowcount)
        return result.rowcount

    # -- reads ------------------------------------------------------------

    async def load_active(self, peer_id: Optional[str] = None) -> List[ContentItem]:
        """Non-expired cached items, optionally for one peer only."""
        await self.prune_expired()
        stmt = select(HiddenCacheEntry).where(HiddenCacheEntry.expires_at > self._now())
        if peer_id is not None:
            stmt = stmt.where(HiddenCacheEntry.peer_id == peer_id)

        try:
            async with self._session_factory() as session:
                rows = list((await session.execute(stmt)).scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Hidden cache read failed: {e}") from e

        items: List[ContentItem] = []
        for row in rows:
            try:
                item = self.codec.decode(row.snapshot)
            except Exception as e:
                logger.warning(
                    "Dropping undecodable cache entry %s/%s: %s", row.peer_id, row.content_id, e
                )
                continue
            items.append(replace(item, peer_id=row.peer_id))
        return items

    async def merge(
        self,
        live: Sequence[ContentItem],
        include_orphaned: bool = False,
        peer_id: Optional[str] = None,
    ) -> List[ContentItem]:
        """Reconcile a live fetch with cached pushes.

        - a stub or placeholder live item is replaced by its cached copy
        - a live item without usable media gets the cached media
        - a live item with media is never overwritten
        - placeholders with nothing cached are dropped
        - cached items missing from *live* are appended if *include_orphaned*

        The result is unique per (peer, content id) and newest first.
        """
        cached: Dict[Tuple[Optional[str], int], ContentItem] = {
            (c.peer_id, c.id): c for c in await self.load_active(peer_id)
        }
        return merge_items(live, cached, include_orphaned=include_orphaned, peer_id=peer_id)


def merge_items(
    live: Sequence[ContentItem],
    cached: Dict[Tuple[Optional[str], int], ContentItem],
    include_orphaned: bool = False,
    peer_id: Optional[str] = None,
) -> List[ContentItem]:
    merged: List[ContentItem] = []
    seen = set()

    for item in live:
        item_peer = item.peer_id or peer_id
        key = (item_peer, item.id)
        if key in seen:
            continue

        hit = cached.get(key)
        if hit is not None:
            if item.is_min or item.placeholder:
                chosen = hit
            elif not item.has_media and hit.has_media:
                chosen = replace(item, media=hit.media, media_kind=hit.media_kind)
            else:
                chosen = item
        elif item.placeholder:
            continue
        else:
            chosen = item

        if chosen.peer_id is None and item_peer is not None:
            chosen = replace(chosen, peer_id=item_peer)
        seen.add(key)
        merged.append(chosen)

    if include_orphaned:
        for key, hit in cached.items():
            if key not in seen:
                seen.add(key)
                merged.append(hit)

    merged.sort(key=lambda i: i.date, reverse=True)
    return merged


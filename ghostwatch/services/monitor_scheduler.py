"""
Monitor scheduler.

Every monitor owns one self-rescheduling timer held in a ``TaskRegistry``
(monitor id -> task). A timer fires ``max(0, last_checked_at + interval -
now)`` after start, so a restart resumes the schedule instead of checking
every monitor at once.

A check:
  1. reloads the row (a monitor removed meanwhile is dropped silently),
  2. resolves the target, following a rename through the durable
     (target_id, access_hash) pair and telling the owner,
  3. fetches stories under stealth mode, merged with the hidden cache,
     and delivers only keys ``contentId:timestamp`` not yet recorded,
  4. compares the profile photo id and delivers a change,
  5. stores ``last_checked_at`` (taken after the check) and reschedules.
"""

import asyncio
import enum
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import insert_for
from ..domain.content import ContentItem, ResolvedPeer, normalize_target
from ..domain.errors import DeliveryFailure, PersistenceError, ProviderDataError, ProviderError
from ..domain.interfaces import ContentDeliverer, EntitlementChecker, Notifier, StoryProvider
from ..models.monitor import MonitorTarget, SentContentRecord
from ..utils.task_registry import TaskRegistry
from .content_fetcher import StoryFetcher
from .job_store import SessionFactory

logger = logging.getLogger(__name__)

# Sent records live as long as the story can
SENT_RECORD_TTL_SECONDS = 24 * 3600


class SubscribeStatus(str, enum.Enum):
    CREATED = "created"
    EXISTS = "exists"
    LIMIT_REACHED = "limit_reached"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class SubscribeResult:
    status: SubscribeStatus
    monitor: Optional[MonitorTarget] = None


def next_fire_delay(last_checked_at: Optional[datetime], interval: float, now: datetime) -> float:
    """Seconds until a monitor is due; a never-checked monitor is due now."""
    if last_checked_at is None:
        return 0.0
    due = last_checked_at + timedelta(seconds=interval)
    return max(0.0, (due - now).total_seconds())


class MonitorScheduler:
    def __init__(
        self,
        provider: StoryProvider,
        fetcher: StoryFetcher,
        deliverer: ContentDeliverer,
        notifier: Notifier,
        entitlements: EntitlementChecker,
        session_factory: Optional[SessionFactory] = None,
        check_interval: float = 3600.0,
        max_monitors_per_owner: int = 5,
        username_refresh_interval: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if session_factory is None:
            from ..core.database import get_db_session

            session_factory = get_db_session
        self.provider = provider
        self.fetcher = fetcher
        self.deliverer = deliverer
        self.notifier = notifier
        self.entitlements = entitlements
        self._session_factory = session_factory
        self.check_interval = check_interval
        self.max_monitors_per_owner = max_monitors_per_owner
        self.username_refresh_interval = username_refresh_interval
        self._clock = clock

        self.timers = TaskRegistry("monitor")
        self._running = False

    # -- helpers ----------------------------------------------------------

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc).replace(tzinfo=None)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            raise PersistenceError(f"Monitor store operation failed: {e}") from e

    async def _notify(self, owner_id: int, text: str) -> None:
        try:
            await self.notifier.notify_owner(owner_id, text)
        except Exception as e:
            logger.warning("Failed to notify owner %s: %s", owner_id, e)

    # -- lifecycle --------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> int:
        """Schedule every stored monitor. Returns the number scheduled."""
        self._running = True
        async with self._session() as session:
            rows = (await session.execute(select(MonitorTarget.id, MonitorTarget.last_checked_at))).all()

        now = self._now()
        for monitor_id, last_checked_at in rows:
            self.schedule(monitor_id, next_fire_delay(last_checked_at, self.check_interval, now))
        logger.info("Monitor scheduler started with %d monitor(s)", len(rows))
        return len(rows)

    async def stop(self) -> None:
        self._running = False
        await self.timers.cancel_all()
        logger.info("Monitor scheduler stopped")

    def schedule(self, monitor_id: int, delay: float) -> None:
        """(Re)arm the timer of one monitor."""
        self.timers.schedule(monitor_id, self._fire_after(monitor_id, delay))

    async def _fire_after(self, monitor_id: int, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.check_single_monitor(monitor_id)

    # -- checks -----------------------------------------------------------

    async def _load(self, monitor_id: int) -> Optional[MonitorTarget]:
        async with self._session() as session:
            return await session.get(MonitorTarget, monitor_id)

    async def check_single_monitor(self, monitor_id: int) -> bool:
        """Run one check. Returns False if the monitor no longer exists."""
        monitor = await self._load(monitor_id)
        if monitor is None:
            logger.debug("Monitor %s removed, dropping its timer", monitor_id)
            self.timers.cancel(monitor_id)
            return False

        try:
            peer = await self._resolve(monitor)
            await self._check_stories(monitor, peer)
            await self._check_photo(monitor, peer)
        except ProviderDataError as e:
            logger.info("Monitor %s (@%s) data error: %s", monitor.id, monitor.target_username, e)
            await self._notify(
                monitor.owner_id,
                f"Could not check @{monitor.target_username}: the account is unavailable.",
            )
        except ProviderError as e:
            logger.warning("Monitor %s (@%s) provider error: %s", monitor.id, monitor.target_username, e)
        except DeliveryFailure as e:
            logger.warning("Monitor %s delivery failed: %s", monitor.id, e)
        except PersistenceError as e:
            logger.error("Monitor %s store error: %s", monitor.id, e)
        except Exception as e:
            logger.error("Monitor %s check crashed: %s", monitor.id, e, exc_info=True)

        still_exists = await self._touch(monitor.id)
        if still_exists and self._running:
            self.schedule(monitor.id, self.check_interval)
        return still_exists

    async def _touch(self, monitor_id: int) -> bool:
        try:
            async with self._session() as session:
                result = await session.execute(
                    update(MonitorTarget)
                    .where(MonitorTarget.id == monitor_id)
                    .values(last_checked_at=self._now())
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except PersistenceError as e:
            logger.error("Could not record check time for monitor %s: %s", monitor_id, e)
            return True
        return result.rowcount == 1

    async def _resolve(self, monitor: MonitorTarget) -> ResolvedPeer:
        try:
            peer = await self.provider.resolve_username(monitor.target_username)
        except ProviderDataError as e:
            if not e.identity_changed or not monitor.target_id:
                raise
            return await self._follow_rename(monitor)

        if monitor.target_id and peer.peer_id != monitor.target_id:
            # The handle now belongs to someone else
            return await self._follow_rename(monitor)

        if monitor.target_id != peer.peer_id or monitor.access_hash != peer.access_hash:
            await self._store_identity(monitor, peer, username=monitor.target_username)
        return peer

    async def _follow_rename(self, monitor: MonitorTarget) -> ResolvedPeer:
        peer = await self.provider.resolve_by_id(monitor.target_id, monitor.access_hash)
        old = monitor.target_username
        new = peer.username
        if new and new != old:
            if await self._store_identity(monitor, peer, username=new):
                logger.info("Monitor %s target renamed @%s -> @%s", monitor.id, old, new)
                await self._notify(
                    monitor.owner_id, f"@{old} changed their username to @{new}. Monitoring continues."
                )
        elif not new:
            logger.info("Monitor %s target @%s has no public username now", monitor.id, old)
        return peer

    async def _store_identity(self, monitor: MonitorTarget, peer: ResolvedPeer, username: str) -> bool:
        try:
            async with self._session() as session:
                await session.execute(
                    update(MonitorTarget)
                    .where(MonitorTarget.id == monitor.id)
                    .values(
                        target_id=peer.peer_id,
                        access_hash=peer.access_hash,
                        target_username=username,
                        username_refreshed_at=self._now(),
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except PersistenceError as e:
            if isinstance(e.__cause__, IntegrityError):
                # Owner already monitors the new handle separately
                logger.warning("Monitor %s rename to @%s conflicts: %s", monitor.id, username, e)
                return False
            raise

        monitor.target_id = peer.peer_id
        monitor.access_hash = peer.access_hash
        monitor.target_username = username
        return True

    async def _check_stories(self, monitor: MonitorTarget, peer: ResolvedPeer) -> int:
        items = [i for i in await self.fetcher.fetch_for_peer(peer) if i.has_media]
        now_ts = int(self._clock())

        async with self._session() as session:
            await session.execute(
                delete(SentContentRecord).where(
                    SentContentRecord.monitor_id == monitor.id,
                    SentContentRecord.expires_at <= now_ts,
                )
            )
            await session.commit()
            sent = set(
                (
                    await session.execute(
                        select(SentContentRecord.content_key).where(
                            SentContentRecord.monitor_id == monitor.id
                        )
                    )
                ).scalars()
            )

        fresh: Dict[str, ContentItem] = {}
        for item in items:
            if item.dedup_key not in sent and item.dedup_key not in fresh:
                fresh[item.dedup_key] = item
        if not fresh:
            return 0

        new_items = sorted(fresh.values(), key=lambda i: i.date)
        try:
            delivered = await self.deliverer.deliver(
                new_items, monitor.owner_id, caption=f"New stories from @{monitor.target_username}"
            )
        except DeliveryFailure as e:
            if e.delivered:
                await self._record_sent(monitor.id, e.delivered)
            raise

        if delivered:
            await self._record_sent(monitor.id, delivered)
        if len(delivered) < len(new_items):
            # Unrecorded stories are offered again on the next check
            logger.warning(
                "Monitor %s delivered %d of %d new story(ies)", monitor.id, len(delivered), len(new_items)
            )
        else:
            logger.info("Monitor %s delivered %d new story(ies)", monitor.id, len(delivered))
        return len(delivered)

    async def _record_sent(self, monitor_id: int, items: Sequence[ContentItem]) -> None:
        async with self._session() as session:
            stmt = insert_for(session, SentContentRecord).values(
                [
                    {
                        "monitor_id": monitor_id,
                        "content_key": item.dedup_key,
                        "content_id": item.id,
                        "content_timestamp": item.date,
                        "expires_at": item.date + SENT_RECORD_TTL_SECONDS,
                    }
                    for item in items
                ]
            )
            await session.execute(stmt.on_conflict_do_nothing())
            await session.commit()

    async def _check_photo(self, monitor: MonitorTarget, peer: ResolvedPeer) -> bool:
        photo = await self.provider.get_profile_photo(peer)
        new_id = photo.id if photo is not None else None
        if new_id == monitor.last_photo_id:
            return False

        username = monitor.target_username
        if photo is None:
            await self.deliverer.deliver_profile_photo(
                None, monitor.owner_id, caption=f"@{username} removed their profile photo."
            )
        else:
            await self.deliverer.deliver_profile_photo(
                photo, monitor.owner_id, caption=f"@{username} has a new profile photo."
            )

        async with self._session() as session:
            await session.execute(
                update(MonitorTarget)
                .where(MonitorTarget.id == monitor.id)
                .values(last_photo_id=new_id)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        monitor.last_photo_id = new_id
        return True

    async def force_check_monitors(self) -> Dict[str, int]:
        """Admin sweep: drop monitors of unentitled owners, check the rest."""
        async with self._session() as session:
            monitors = list((await session.execute(select(MonitorTarget))).scalars().all())

        entitled: Dict[int, bool] = {}
        checked = removed = 0
        for monitor in monitors:
            owner = monitor.owner_id
            if owner not in entitled:
                entitled[owner] = self.entitlements.is_admin(owner) or await self.entitlements.is_premium(owner)

            if not entitled[owner]:
                await self._delete_monitor(monitor.id)
                removed += 1
                await self._notify(
                    owner,
                    f"Monitoring of @{monitor.target_username} stopped: premium is required.",
                )
                continue

            await self.check_single_monitor(monitor.id)
            checked += 1

        logger.info("Forced monitor sweep: checked=%d removed=%d", checked, removed)
        return {"checked": checked, "removed": removed}

    # -- subscriptions ----------------------------------------------------

    async def subscribe(self, owner_id: int, target: str) -> SubscribeResult:
        username = normalize_target(target)
        if not username:
            return SubscribeResult(SubscribeStatus.NOT_FOUND)

        async with self._session() as session:
            existing = (
                await session.execute(
                    select(MonitorTarget).where(
                        MonitorTarget.owner_id == owner_id,
                        MonitorTarget.target_username == username,
                    )
                )
            ).scalar_one_or_none()
            if existing is not None:
                return SubscribeResult(SubscribeStatus.EXISTS, existing)

            if await self._count_monitors(session, owner_id) >= self.max_monitors_per_owner:
                return SubscribeResult(SubscribeStatus.LIMIT_REACHED)

        try:
            peer = await self.provider.resolve_username(username)
        except ProviderDataError:
            return SubscribeResult(SubscribeStatus.NOT_FOUND)

        monitor = MonitorTarget(
            owner_id=owner_id,
            target_id=peer.peer_id,
            target_username=username,
            access_hash=peer.access_hash,
            username_refreshed_at=self._now(),
        )
        try:
            async with self._session() as session:
                session.add(monitor)
                await session.flush()
                # Re-counted after our own insert; a concurrent subscribe may have won
                if await self._count_monitors(session, owner_id) > self.max_monitors_per_owner:
                    await session.rollback()
                    return SubscribeResult(SubscribeStatus.LIMIT_REACHED)
                await session.commit()
                await session.refresh(monitor)
        except PersistenceError as e:
            if isinstance(e.__cause__, IntegrityError):
                return SubscribeResult(SubscribeStatus.EXISTS)
            raise

        logger.info("Owner %s subscribed to @%s (monitor %s)", owner_id, username, monitor.id)
        if self._running:
            self.schedule(monitor.id, 0)
        return SubscribeResult(SubscribeStatus.CREATED, monitor)

    @staticmethod
    async def _count_monitors(session: AsyncSession, owner_id: int) -> int:
        return (
            await session.execute(
                select(func.count(MonitorTarget.id)).where(MonitorTarget.owner_id == owner_id)
            )
        ).scalar_one()

    async def unsubscribe(self, owner_id: int, target: str) -> bool:
        username = normalize_target(target)
        async with self._session() as session:
            monitor_id = (
                await session.execute(
                    select(MonitorTarget.id).where(
                        MonitorTarget.owner_id == owner_id,
                        MonitorTarget.target_username == username,
                    )
                )
            ).scalar_one_or_none()
        if monitor_id is None:
            return False
        await self._delete_monitor(monitor_id)
        logger.info("Owner %s unsubscribed from @%s", owner_id, username)
        return True

    async def _delete_monitor(self, monitor_id: int) -> None:
        async with self._session() as session:
            await session.execute(delete(SentContentRecord).where(SentContentRecord.monitor_id == monitor_id))
            await session.execute(delete(MonitorTarget).where(MonitorTarget.id == monitor_id))
            await session.commit()
        self.timers.cancel(monitor_id)

    async def list_monitors(self, owner_id: int) -> List[MonitorTarget]:
        """Owner's monitors, with stale usernames refreshed through the id pair."""
        async with self._session() as session:
            monitors = list(
                (
                    await session.execute(
                        select(MonitorTarget)
                        .where(MonitorTarget.owner_id == owner_id)
                        .order_by(MonitorTarget.id)
                    )
                ).scalars().all()
            )

        now = self._now()
        refresh_after = timedelta(seconds=self.username_refresh_interval)
        for monitor in monitors:
            if not monitor.target_id:
                continue
            if monitor.username_refreshed_at and now - monitor.username_refreshed_at < refresh_after:
                continue
            await self._refresh_username(monitor)
        return monitors

    async def _refresh_username(self, monitor: MonitorTarget) -> None:
        try:
            peer = await self.provider.resolve_by_id(monitor.target_id, monitor.access_hash)
        except ProviderError as e:
            logger.info("Username refresh for monitor %s failed: %s", monitor.id, e)
            return

        username = peer.username or monitor.target_username
        if username != monitor.target_username:
            logger.info("Monitor %s username @%s -> @%s", monitor.id, monitor.target_username, username)
        try:
            await self._store_identity(monitor, peer, username=username)
        except PersistenceError as e:
            logger.warning("Could not store refreshed username for monitor %s: %s", monitor.id, e)

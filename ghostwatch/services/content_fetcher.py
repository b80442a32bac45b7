"""
Story fetch collaborator.

Resolves a target, switches stealth mode on, reads its active stories
(temporarily unhiding the peer when we have it hidden) and folds in the
hidden content cache. Data and rate-limit failures come back as a
user-facing message instead of an exception.
"""

import logging
from typing import List, Optional, Sequence

from ..domain.content import ContentItem, ResolvedPeer, normalize_target
from ..domain.errors import ProviderDataError, ProviderRateLimited
from ..domain.interfaces import FetchResult, StoryProvider
from .hidden_content_cache import HiddenContentCache
from .stealth_coordinator import StealthCoordinator

logger = logging.getLogger(__name__)


class StoryFetcher:
    def __init__(
        self,
        provider: StoryProvider,
        stealth: StealthCoordinator,
        cache: HiddenContentCache,
    ) -> None:
        self.provider = provider
        self.stealth = stealth
        self.cache = cache

    async def fetch(self, target: str, payload: Optional[dict] = None) -> FetchResult:
        """Fetch stories for *target*.

        Payload keys:
            story_ids: fetch these stories instead of the active ones
            include_hidden: append cached pushes the live fetch didn't return
        """
        payload = payload or {}
        username = normalize_target(target)
        if not username:
            return "Please send a username."

        try:
            peer = await self.provider.resolve_username(username)
        except ProviderDataError:
            return f"User @{username} not found."
        except ProviderRateLimited as e:
            return f"Too many requests right now. Please try again in {int(e.seconds)} seconds."

        story_ids = payload.get("story_ids") or []
        try:
            items = await self.fetch_for_peer(
                peer,
                story_ids=story_ids,
                include_hidden=payload.get("include_hidden"),
            )
        except ProviderDataError as e:
            logger.info("Fetch for @%s rejected: %s", username, e)
            return f"Stories of @{username} are not available."
        except ProviderRateLimited as e:
            return f"Too many requests right now. Please try again in {int(e.seconds)} seconds."

        return [item for item in items if item.has_media]

    async def fetch_for_peer(
        self,
        peer: ResolvedPeer,
        story_ids: Sequence[int] = (),
        include_hidden: Optional[bool] = None,
    ) -> List[ContentItem]:
        """Live fetch for an already resolved peer, merged with the cache."""
        await self.stealth.ensure_stealth_mode(past=bool(story_ids))

        async def load() -> List[ContentItem]:
            if story_ids:
                return await self.provider.get_stories_by_id(peer, story_ids)
            return await self.provider.get_active_stories(peer)

        if peer.stories_hidden:
            live = await self.stealth.with_peer_visible(peer, load)
        else:
            live = await load()

        if include_hidden is None:
            include_hidden = peer.stories_hidden and not story_ids
        return await self.cache.merge(live, include_orphaned=include_hidden, peer_id=peer.peer_id)

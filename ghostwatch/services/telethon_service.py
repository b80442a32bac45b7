"""Telethon service: the MTProto "userbot" side of Ghostwatch.

The Bot API cannot read stories, so every story, profile photo and stealth
mode call goes through a logged-in user account via Telethon. This module
is the only place that knows about TL types: requests go out through
``with_provider_retry`` and failures come back as domain errors, results
come back as ``ContentItem`` / ``ResolvedPeer`` / ``ProfilePhoto``.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

from telethon import TelegramClient, errors, events, functions, types, utils
from telethon.extensions import BinaryReader
from telethon.tl.tlobject import TLObject

from ..domain.content import ContentItem, ProfilePhoto, ResolvedPeer
from ..domain.envelopes import extract_items
from ..domain.errors import (
    ProviderCapabilityDenied,
    ProviderDataError,
    ProviderError,
    ProviderRateLimited,
    ProviderTransient,
)
from ..utils.retry import is_transient_provider_error, with_provider_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# RPC error messages meaning the target handle no longer resolves
IDENTITY_ERRORS = ("USERNAME_NOT_OCCUPIED", "USERNAME_INVALID", "USERNAME_NOT_MODIFIED")
DATA_ERRORS = ("PEER_ID_INVALID", "USER_ID_INVALID", "CHANNEL_PRIVATE", "CHANNEL_INVALID", "STORY_ID_INVALID")


def translate_error(exc: BaseException) -> ProviderError:
    """Map a Telethon failure onto the domain error taxonomy."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, errors.FloodWaitError):
        return ProviderRateLimited(exc.seconds, str(exc))

    message = getattr(exc, "message", None) or str(exc)
    code = getattr(exc, "code", None)

    if is_transient_provider_error(exc):
        return ProviderTransient(message, code=code)
    if "PREMIUM_ACCOUNT_REQUIRED" in message:
        return ProviderCapabilityDenied(message, code=code)
    if any(marker in message for marker in IDENTITY_ERRORS):
        return ProviderDataError(message, code=code, identity_changed=True)
    if any(marker in message for marker in DATA_ERRORS):
        return ProviderDataError(message, code=code)
    if isinstance(exc, ValueError):
        # get_entity() raises ValueError for handles nobody owns
        return ProviderDataError(message, identity_changed=True)
    return ProviderError(message, code=code)


def _to_unix(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return int(value.timestamp())
    return int(value)


def media_kind_of(media: Any) -> Optional[str]:
    if media is None:
        return None
    if isinstance(media, types.MessageMediaPhoto):
        return "photo"
    if isinstance(media, types.MessageMediaDocument):
        document = media.document
        if document is not None and any(
            isinstance(a, types.DocumentAttributeVideo) for a in getattr(document, "attributes", [])
        ):
            return "video"
        return "document"
    if isinstance(media, types.MessageMediaEmpty):
        return "empty"
    if isinstance(media, types.MessageMediaUnsupported):
        return "unsupported"
    return "other"


def story_to_item(story: Any, peer_id: Optional[str] = None) -> ContentItem:
    """Convert a TL story (full, skipped or deleted) to a ``ContentItem``."""
    if isinstance(story, types.StoryItem):
        return ContentItem(
            id=story.id,
            date=_to_unix(story.date) or 0,
            expire_date=_to_unix(story.expire_date),
            peer_id=peer_id,
            media=story.media,
            media_kind=media_kind_of(story.media),
            caption=story.caption,
            is_min=bool(story.min),
            pinned=bool(story.pinned),
        )
    # StoryItemSkipped / StoryItemDeleted carry an id and nothing to show
    return ContentItem(
        id=story.id,
        date=_to_unix(getattr(story, "date", None)) or 0,
        expire_date=_to_unix(getattr(story, "expire_date", None)),
        peer_id=peer_id,
        placeholder=True,
    )


class TelethonContentCodec:
    """Snapshot codec keeping media as raw TL bytes.

    Layout: one JSON header line, then the serialized media object.
    """

    def encode(self, item: ContentItem) -> bytes:
        header = item.to_dict()
        media = header.pop("media")
        body = bytes(media) if isinstance(media, TLObject) else b""
        return json.dumps(header).encode("utf-8") + b"\n" + body

    def decode(self, data: bytes) -> ContentItem:
        header, _, body = data.partition(b"\n")
        fields = json.loads(header.decode("utf-8"))
        if body:
            with BinaryReader(body) as reader:
                fields["media"] = reader.tgread_object()
        return ContentItem.from_dict(fields)


class TelethonService:
    """Story provider backed by a Telethon user session."""

    def __init__(
        self,
        api_id: int,
        api_hash: str,
        session: str,
        retry_attempts: int = 5,
        retry_base_delay: float = 1.0,
        client: Optional[TelegramClient] = None,
    ) -> None:
        self.api_id = api_id
        self.api_hash = api_hash
        self.session = session
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self._client = client
        self._lock = asyncio.Lock()

    @property
    def client(self) -> TelegramClient:
        if self._client is None:
            raise RuntimeError("Telethon client is not connected")
        return self._client

    async def connect(self) -> None:
        """Connect and verify the session is authorized."""
        async with self._lock:
            if self._client is None:
                self._client = TelegramClient(self.session, self.api_id, self.api_hash)
            if not self._client.is_connected():
                await self._client.connect()
            if not await self._client.is_user_authorized():
                raise RuntimeError(
                    "Telethon session is not authorized. Log the userbot in before starting."
                )
        logger.info("Telethon client connected and authorized")

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.disconnect()
            self._client = None
            logger.info("Telethon client disconnected")

    async def _call(self, func: Callable[[], Awaitable[T]]) -> T:
        async def attempt() -> T:
            try:
                return await func()
            except (errors.RPCError, ValueError) as e:
                raise translate_error(e) from e

        return await with_provider_retry(
            attempt, attempts=self.retry_attempts, base_delay=self.retry_base_delay
        )

    async def _request(self, request: Any) -> Any:
        return await self._call(lambda: self.client(request))

    @staticmethod
    def _input(peer: Any) -> Any:
        return peer.input_peer if isinstance(peer, ResolvedPeer) else peer

    # -- resolution -------------------------------------------------------

    def _peer_from_entity(self, entity: Any) -> ResolvedPeer:
        access_hash = getattr(entity, "access_hash", None)
        return ResolvedPeer(
            peer_id=str(entity.id),
            access_hash=str(access_hash) if access_hash is not None else None,
            username=(getattr(entity, "username", None) or "").lower() or None,
            stories_hidden=bool(getattr(entity, "stories_hidden", False)),
            input_peer=utils.get_input_peer(entity),
        )

    async def resolve_username(self, username: str) -> ResolvedPeer:
        entity = await self._call(lambda: self.client.get_entity(username))
        return self._peer_from_entity(entity)

    async def resolve_by_id(self, peer_id: str, access_hash: Optional[str]) -> ResolvedPeer:
        """Resolve through the durable id pair; survives username changes."""
        input_user = types.InputUser(user_id=int(peer_id), access_hash=int(access_hash or 0))
        users = await self._request(functions.users.GetUsersRequest(id=[input_user]))
        if not users or isinstance(users[0], types.UserEmpty):
            raise ProviderDataError(f"User {peer_id} not found")
        return self._peer_from_entity(users[0])

    # -- stories ----------------------------------------------------------

    async def get_active_stories(self, peer: ResolvedPeer) -> List[ContentItem]:
        response = await self._request(
            functions.stories.GetPeerStoriesRequest(peer=self._input(peer))
        )
        return [story_to_item(s, peer.peer_id) for s in extract_items(response)]

    async def get_stories_by_id(self, peer: ResolvedPeer, ids: Sequence[int]) -> List[ContentItem]:
        response = await self._request(
            functions.stories.GetStoriesByIDRequest(peer=self._input(peer), id=list(ids))
        )
        return [story_to_item(s, peer.peer_id) for s in extract_items(response)]

    async def get_profile_photo(self, peer: ResolvedPeer) -> Optional[ProfilePhoto]:
        response = await self._request(
            functions.photos.GetUserPhotosRequest(
                user_id=self._input(peer), offset=0, max_id=0, limit=1
            )
        )
        photos = getattr(response, "photos", None) or []
        if not photos:
            return None
        photo = photos[0]
        return ProfilePhoto(
            id=str(photo.id),
            media=photo,
            is_video=bool(getattr(photo, "video_sizes", None)),
        )

    async def activate_stealth_mode(self, past: bool, future: bool) -> None:
        await self._request(functions.stories.ActivateStealthModeRequest(past=past, future=future))

    async def toggle_peer_stories_hidden(self, peer: Any, hidden: bool) -> None:
        await self._request(
            functions.stories.TogglePeerStoriesHiddenRequest(peer=self._input(peer), hidden=hidden)
        )

    async def download_media(self, media: Any) -> Optional[bytes]:
        return await self._call(lambda: self.client.download_media(media, file=bytes))

    # -- push updates -----------------------------------------------------

    def attach_hidden_cache(self, cache: Any) -> None:
        """Feed story push updates into the hidden content cache."""

        async def on_story_update(update: types.UpdateStory) -> None:
            try:
                peer_id = str(utils.get_peer_id(update.peer, add_mark=False))
                story = update.story
                if isinstance(story, types.StoryItemDeleted):
                    await cache.handle_push(peer_id, None, deleted_id=story.id)
                elif isinstance(story, types.StoryItem):
                    await cache.handle_push(peer_id, None, story_to_item(story, peer_id))
            except Exception as e:
                logger.warning("Failed to cache story push: %s", e)

        self.client.add_event_handler(on_story_update, events.Raw(types=types.UpdateStory))
        logger.info("Hidden content cache attached to story updates")


"""
Collaborator interfaces (Protocols).

The execution core depends only on these; the Telethon and
python-telegram-bot adapters in ``services`` implement them and are
wired at construction time (constructor injection). Tests substitute
mocks.
"""

from typing import Any, List, Optional, Protocol, Sequence, Union, runtime_checkable

from .content import ContentItem, ProfilePhoto, ResolvedPeer

# A fetch either yields items or a user-facing failure message
FetchResult = Union[List[ContentItem], str]


@runtime_checkable
class ContentFetcher(Protocol):
    """Fetches the content a job asks for."""

    async def fetch(self, target: str, payload: Optional[dict] = None) -> FetchResult: ...


@runtime_checkable
class ContentDeliverer(Protocol):
    """Delivers fetched content to a chat. Raises ``DeliveryFailure``.

    ``deliver`` returns the items that reached the chat; anything missing
    from it was not sent and must not be treated as delivered.
    """

    async def deliver(
        self,
        items: Sequence[ContentItem],
        destination: int,
        caption: Optional[str] = None,
    ) -> List[ContentItem]: ...

    async def deliver_profile_photo(
        self,
        photo: Optional[ProfilePhoto],
        destination: int,
        caption: Optional[str] = None,
    ) -> None: ...


@runtime_checkable
class Notifier(Protocol):
    """Owner-facing status text and operator alerts."""

    async def notify_owner(self, owner_id: int, text: str) -> Optional[int]: ...

    async def alert_operator(self, text: str) -> None: ...

    async def delete_message(self, chat_id: int, message_id: int) -> None: ...


@runtime_checkable
class StoryProvider(Protocol):
    """MTProto-side operations the core needs from the userbot account."""

    async def resolve_username(self, username: str) -> ResolvedPeer: ...

    async def resolve_by_id(self, peer_id: str, access_hash: Optional[str]) -> ResolvedPeer: ...

    async def get_active_stories(self, peer: ResolvedPeer) -> List[ContentItem]: ...

    async def get_stories_by_id(self, peer: ResolvedPeer, ids: Sequence[int]) -> List[ContentItem]: ...

    async def get_profile_photo(self, peer: ResolvedPeer) -> Optional[ProfilePhoto]: ...

    async def activate_stealth_mode(self, past: bool, future: bool) -> None: ...

    async def toggle_peer_stories_hidden(self, peer: Any, hidden: bool) -> None: ...

    async def download_media(self, media: Any) -> Optional[bytes]: ...


@runtime_checkable
class EntitlementChecker(Protocol):
    """Answers who is privileged (admin or premium)."""

    def is_admin(self, owner_id: int) -> bool: ...

    async def is_premium(self, owner_id: int) -> bool: ...

    async def is_privileged(self, owner_id: int) -> bool: ...

"""
Provider-neutral value objects for story content.

The Telethon adapter converts TL objects into these; every service below
the adapter works only with them.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Media kinds that carry nothing downloadable
EMPTY_MEDIA_KINDS = frozenset({"empty", "unsupported"})


@dataclass
class ContentItem:
    """A single story item as returned by the provider.

    ``is_min`` marks a stripped item the provider sends when it only wants
    to tell us the story exists. ``placeholder`` marks a skipped/deleted
    entry that has an id but nothing renderable.
    """

    id: int
    date: int
    expire_date: Optional[int] = None
    peer_id: Optional[str] = None
    media: Any = None
    media_kind: Optional[str] = None
    caption: Optional[str] = None
    is_min: bool = False
    placeholder: bool = False
    pinned: bool = False

    @property
    def dedup_key(self) -> str:
        """Key deciding redelivery: providers recycle ids, so the date is part of it."""
        return f"{self.id}:{self.date}"

    @property
    def has_media(self) -> bool:
        return self.media is not None and self.media_kind not in EMPTY_MEDIA_KINDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date,
            "expire_date": self.expire_date,
            "peer_id": self.peer_id,
            "media": self.media,
            "media_kind": self.media_kind,
            "caption": self.caption,
            "is_min": self.is_min,
            "placeholder": self.placeholder,
            "pinned": self.pinned,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentItem":
        return cls(
            id=int(data["id"]),
            date=int(data.get("date") or 0),
            expire_date=data.get("expire_date"),
            peer_id=data.get("peer_id"),
            media=data.get("media"),
            media_kind=data.get("media_kind"),
            caption=data.get("caption"),
            is_min=bool(data.get("is_min", False)),
            placeholder=bool(data.get("placeholder", False)),
            pinned=bool(data.get("pinned", False)),
        )


@dataclass
class ResolvedPeer:
    """A resolved target: the durable id pair plus its current handle."""

    peer_id: str
    access_hash: Optional[str] = None
    username: Optional[str] = None
    stories_hidden: bool = False
    input_peer: Any = field(default=None, repr=False)


@dataclass
class ProfilePhoto:
    """Current profile photo identity of a target."""

    id: str
    media: Any = field(default=None, repr=False)
    is_video: bool = False


def normalize_target(target: str) -> str:
    """Canonical form of a user-supplied handle: no whitespace, no '@', lowercase."""
    return target.strip().lstrip("@").strip().lower()

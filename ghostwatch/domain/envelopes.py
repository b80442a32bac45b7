"""
Normalization of provider response envelopes.

The provider wraps "a list of story items" in several shapes depending on
the request (peer stories, pinned stories, stories by id, all stories).
Call sites use these helpers instead of branching on the shape.
"""

from typing import Any, List, Optional, Tuple


def _get(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def extract_items(response: Any) -> List[Any]:
    """Return the story items contained in *response* as a list.

    Known shapes:
      - ``None`` -> ``[]``
      - a bare list/tuple of items
      - ``{stories: [...]}`` (stories by id, pinned stories)
      - ``{stories: {stories: [...]}}`` (peer stories -> PeerStories)
    Attribute-style objects and dicts are treated alike. Anything else
    yields an empty list.
    """
    if response is None:
        return []
    if isinstance(response, (list, tuple)):
        return list(response)

    nested = _get(response, "stories")
    if nested is None:
        return []
    if isinstance(nested, (list, tuple)):
        return list(nested)
    # PeerStories nested one level deeper
    return extract_items(nested)


def extract_peer(response: Any) -> Optional[Any]:
    """Return the peer an envelope belongs to, if it names one."""
    if response is None or isinstance(response, (list, tuple)):
        return None
    peer = _get(response, "peer")
    if peer is not None:
        return peer
    nested = _get(response, "stories")
    if nested is not None and not isinstance(nested, (list, tuple)):
        return extract_peer(nested)
    return None


def collect_peer_items(all_stories: Any) -> List[Tuple[Any, Any]]:
    """Flatten a multi-peer envelope into ``(peer, item)`` pairs.

    Entries without a peer are skipped; the caller cannot attribute them.
    """
    entries: List[Tuple[Any, Any]] = []
    peer_stories = _get(all_stories, "peer_stories") or _get(all_stories, "peerStories") or []
    for envelope in peer_stories:
        peer = extract_peer(envelope)
        if peer is None:
            continue
        for item in extract_items(envelope):
            entries.append((peer, item))
    return entries

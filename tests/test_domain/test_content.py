"""
Tests for story value objects.
"""

import pytest

from ghostwatch.domain.content import ContentItem, normalize_target


class TestContentItem:
    """Tests for ContentItem."""

    def test_dedup_key_includes_date(self):
        assert ContentItem(id=1, date=10).dedup_key == "1:10"
        assert ContentItem(id=1, date=30).dedup_key != ContentItem(id=1, date=10).dedup_key

    @pytest.mark.parametrize(
        "media,kind,expected",
        [
            (None, None, False),
            (object(), "photo", True),
            (object(), "video", True),
            (object(), "empty", False),
            (object(), "unsupported", False),
        ],
    )
    def test_has_media(self, media, kind, expected):
        assert ContentItem(id=1, date=1, media=media, media_kind=kind).has_media is expected

    def test_dict_round_trip_keeps_flags(self):
        item = ContentItem(
            id=5,
            date=100,
            expire_date=200,
            peer_id="42",
            media_kind="photo",
            caption="hi",
            pinned=True,
        )
        restored = ContentItem.from_dict(item.to_dict())
        assert restored == item

    def test_from_dict_defaults(self):
        item = ContentItem.from_dict({"id": "7"})
        assert item.id == 7
        assert item.date == 0
        assert item.is_min is False
        assert item.placeholder is False


class TestNormalizeTarget:
    """Handles are compared after normalization."""

    @pytest.mark.parametrize("raw", ["@TestUser", "TestUser", "  testuser ", "@ TestUser"])
    def test_variants_collapse(self, raw):
        assert normalize_target(raw) == "testuser"

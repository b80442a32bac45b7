"""
Delivery of fetched stories and profile photos through the Bot API.

Media is downloaded through the userbot (the bot cannot see stories) with
a small concurrency limit, then uploaded to the owner's chat as single
messages or albums of up to ten items.
"""

import asyncio
import logging
from typing import Any, List, Optional, Sequence, Tuple

from telegram import Bot, InputMediaDocument, InputMediaPhoto, InputMediaVideo
from telegram.error import TelegramError

from ..domain.content import ContentItem, ProfilePhoto
from ..domain.errors import DeliveryFailure
from ..domain.interfaces import StoryProvider
from ..utils.retry import with_retry

logger = logging.getLogger(__name__)

# Bot API limit for send_media_group
ALBUM_SIZE = 10


class TelegramDeliveryService:
    def __init__(
        self,
        bot: Bot,
        provider: StoryProvider,
        concurrency: int = 3,
        download_attempts: int = 2,
        download_retry_delay: float = 1.0,
    ) -> None:
        self.bot = bot
        self.provider = provider
        self.concurrency = concurrency
        self.download_attempts = download_attempts
        self.download_retry_delay = download_retry_delay

    async def _download_all(self, items: Sequence[ContentItem]) -> List[Tuple[ContentItem, bytes]]:
        limiter = asyncio.Semaphore(self.concurrency)

        async def download(item: ContentItem) -> Optional[Tuple[ContentItem, bytes]]:
            if not item.has_media:
                return None
            async with limiter:
                try:
                    data = await with_retry(
                        self.provider.download_media,
                        item.media,
                        max_attempts=self.download_attempts,
                        base_delay=self.download_retry_delay,
                        exceptions=(ConnectionError, asyncio.TimeoutError),
                    )
                except Exception as e:
                    logger.warning("Download of story %s failed: %s", item.id, e)
                    return None
            return (item, data) if data else None

        results = await asyncio.gather(*(download(item) for item in items))
        return [r for r in results if r is not None]

    async def deliver(
        self,
        items: Sequence[ContentItem],
        destination: int,
        caption: Optional[str] = None,
    ) -> List[ContentItem]:
        """Send *items* to *destination*.

        Photos and videos go out as albums of up to ten; documents are
        grouped separately since the Bot API does not mix them into a
        visual album.

        Returns:
            The items that actually reached the chat. Items whose download
            failed are left out.

        Raises:
            DeliveryFailure: nothing could be downloaded, or the Bot API
                rejected an upload (``delivered`` lists what was sent first)
        """
        downloaded = await self._download_all(items)
        if not downloaded:
            raise DeliveryFailure("Could not download any of the stories. Please try again later.")

        if len(downloaded) < len(items):
            logger.info(
                "Delivering %d of %d stories to %s", len(downloaded), len(items), destination
            )

        visual = [(item, data) for item, data in downloaded if item.media_kind in ("photo", "video")]
        documents = [(item, data) for item, data in downloaded if item.media_kind not in ("photo", "video")]

        sent: List[ContentItem] = []
        pending_caption = caption
        try:
            for group in (visual, documents):
                for start in range(0, len(group), ALBUM_SIZE):
                    chunk = group[start : start + ALBUM_SIZE]
                    chunk_caption, pending_caption = pending_caption, None
                    if len(chunk) == 1:
                        item, data = chunk[0]
                        await self._send_single(destination, item.media_kind, data, chunk_caption or item.caption)
                    else:
                        media = [
                            self._album_entry(item.media_kind, data, chunk_caption if i == 0 else None)
                            for i, (item, data) in enumerate(chunk)
                        ]
                        await self.bot.send_media_group(chat_id=destination, media=media)
                    sent.extend(item for item, _ in chunk)
        except TelegramError as e:
            raise DeliveryFailure(f"Failed to send stories: {e}", delivered=sent) from e
        return sent

    async def _send_single(self, chat_id: int, kind: Optional[str], data: bytes, caption: Optional[str]) -> Any:
        if kind == "video":
            return await self.bot.send_video(chat_id=chat_id, video=data, caption=caption)
        if kind == "photo":
            return await self.bot.send_photo(chat_id=chat_id, photo=data, caption=caption)
        return await self.bot.send_document(chat_id=chat_id, document=data, caption=caption)

    @staticmethod
    def _album_entry(kind: Optional[str], data: bytes, caption: Optional[str]) -> Any:
        if kind == "video":
            return InputMediaVideo(media=data, caption=caption)
        if kind == "photo":
            return InputMediaPhoto(media=data, caption=caption)
        return InputMediaDocument(media=data, caption=caption)

    async def deliver_profile_photo(
        self,
        photo: Optional[ProfilePhoto],
        destination: int,
        caption: Optional[str] = None,
    ) -> None:
        """Send the new profile photo, or a removal notice when *photo* is None."""
        try:
            if photo is None:
                await self.bot.send_message(chat_id=destination, text=caption or "Profile photo removed.")
                return

            data = await self.provider.download_media(photo.media)
            if not data:
                raise DeliveryFailure("Could not download the profile photo")
            await self._send_single(destination, "video" if photo.is_video else "photo", data, caption)
        except TelegramError as e:
            raise DeliveryFailure(f"Failed to send profile photo: {e}") from e

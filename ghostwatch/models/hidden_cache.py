"""Cache of story items pushed by the provider for peers we cannot list."""

from typing import Optional

from sqlalchemy import BigInteger, LargeBinary, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class HiddenCacheEntry(Base):
    __tablename__ = "hidden_content_cache"

    peer_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    content_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    access_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    snapshot: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    content_date: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    # Unix seconds
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

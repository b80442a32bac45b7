"""
Monitor subscription and sent-content ledger models.

MonitorTarget: one owner's subscription to one target's stories/photo.
SentContentRecord: a story already delivered for a monitor, keyed by
``contentId:timestamp`` and kept until the story expires.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin


class MonitorTarget(Base, TimestampMixin):
    __tablename__ = "monitors"
    __table_args__ = (
        UniqueConstraint("owner_id", "target_username", name="uq_monitors_owner_target"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    target_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    target_username: Mapped[str] = mapped_column(String(255), nullable=False)
    access_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_photo_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    username_refreshed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    sent_contents: Mapped[list["SentContentRecord"]] = relationship(
        "SentContentRecord",
        back_populates="monitor",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return (
            f"<MonitorTarget(id={self.id}, owner_id={self.owner_id}, "
            f"target=@{self.target_username})>"
        )


class SentContentRecord(Base):
    __tablename__ = "sent_contents"

    monitor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("monitors.id", ondelete="CASCADE"), primary_key=True
    )
    content_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    content_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    content_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # Unix seconds
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

    monitor: Mapped["MonitorTarget"] = relationship(
        "MonitorTarget", back_populates="sent_contents"
    )

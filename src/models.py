from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base

# Video.status values; only PUBLISHED videos can be liked or viewed
VIDEO_STATUS_DRAFT = "DRAFT"
VIDEO_STATUS_PROCESSING = "PROCESSING"
VIDEO_STATUS_PUBLISHED = "PUBLISHED"
VIDEO_STATUS_REJECTED = "REJECTED"
VIDEO_STATUS_ARCHIVED = "ARCHIVED"


class Video(Base):
    """
    Video row owned by the surrounding application.

    This service only reads ``status`` and writes the two counter columns.
    """

    __tablename__ = "videos"

    id = Column(String(64), primary_key=True)
    status = Column(String(20), nullable=False, default=VIDEO_STATUS_DRAFT)
    likes_count = Column(BigInteger, nullable=False, default=0)
    views_count = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Like(Base):
    """User-video like membership. One row per pair."""

    __tablename__ = "likes"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    video_id = Column(String(64), ForeignKey("videos.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "video_id", name="uq_likes_user_video"),
        Index("idx_likes_video", "video_id"),
    )

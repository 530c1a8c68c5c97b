"""FeedPost model: the owning record of a generation job."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


POST_STATUSES = ("draft", "pending", "generating", "completed", "failed")
IN_FLIGHT_STATUSES = ("pending", "generating")


class FeedPost(Base):
    """A feed slot whose image is produced by a metered generation job."""

    __tablename__ = "feed_posts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    feed_id = Column(String, nullable=True, index=True)
    position = Column(Integer, nullable=False, default=0)
    post_type = Column(String, nullable=False, default="portrait")
    caption = Column(Text, nullable=True)
    brand_vibe = Column(String, nullable=True)
    color_palette = Column(String, nullable=True)

    status = Column(String, nullable=False, default="draft", index=True)
    generation_mode = Column(String, nullable=True)
    job_handle = Column(String, nullable=True, index=True)
    prompt = Column(Text, nullable=True)
    # Final text sent to the prediction service for the current version.
    generation_prompt = Column(Text, nullable=True)
    result_url = Column(String, nullable=True)
    credit_cost = Column(Integer, nullable=True)
    credit_reference_id = Column(String, nullable=True, index=True)
    generation_version = Column(Integer, nullable=False, default=0)
    error_code = Column(String, nullable=True)
    error_message = Column(String, nullable=True)

    generation_started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="feed_posts")

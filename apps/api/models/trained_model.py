"""TrainedModel model for per-user LoRA fine-tunes."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class TrainedModel(Base):
    """Completed (or in-progress) personal model training."""

    __tablename__ = "user_models"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    trigger_word = Column(String, nullable=False)
    replicate_version_id = Column(String, nullable=True)
    lora_weights_url = Column(String, nullable=True)
    lora_scale = Column(Float, nullable=True)
    # optional style LoRA stacked on top of the personal one
    extra_lora_url = Column(String, nullable=True)
    extra_lora_scale = Column(Float, nullable=True)
    training_status = Column(String, nullable=False, default="pending", index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="trained_models")

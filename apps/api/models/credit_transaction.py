"""CreditTransaction model for the auditable credit log."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


TRANSACTION_KINDS = ("purchase", "bonus", "subscription_grant", "image", "training", "animation", "refund")


class CreditTransaction(Base):
    """Immutable credit log entry. Negative amounts are deductions."""

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    kind = Column(String, nullable=False, index=True)
    description = Column(String, nullable=True)
    reference_id = Column(String, nullable=True, index=True)
    balance_after = Column(Integer, nullable=True)
    # "refund:<reference_id>" or "purchase:<billing_reference>"
    idempotency_key = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_transactions")

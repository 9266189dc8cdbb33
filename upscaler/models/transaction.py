"""
Credit transaction model: append-only audit trail of balance changes.
"""
import uuid
from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ..database import Base


class CreditTransaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("type IN ('purchase', 'usage', 'refund')", name="ck_transactions_type"),
    )

    TYPES = ("purchase", "usage", "refund")

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(20), nullable=False)
    amount = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    stripe_session_id = Column(String(255), unique=True, nullable=True)
    reference = Column(String(255), unique=True, nullable=True)  # idempotency key for usage debits
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), index=True)

    # Relationships
    profile = relationship("Profile", back_populates="transactions")

    def to_dict(self):
        """Convert to dictionary for API responses"""
        return {
            "id": self.id,
            "type": self.type,
            "amount": self.amount,
            "description": self.description,
            "stripe_session_id": self.stripe_session_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

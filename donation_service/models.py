import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Numeric, JSON, DateTime
from donation_service.database import Base


class DonationStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


# Target status -> statuses it may be written over.
# CANCELLED is client-reported, so a later capture still wins over it.
ALLOWED_SOURCES = {
    DonationStatus.COMPLETED: (DonationStatus.PENDING, DonationStatus.CANCELLED),
    DonationStatus.FAILED: (DonationStatus.PENDING,),
    DonationStatus.CANCELLED: (DonationStatus.PENDING,),
    DonationStatus.REFUNDED: (DonationStatus.COMPLETED,),
}

# No automatic signal moves a donation out of these
SETTLED = (DonationStatus.COMPLETED, DonationStatus.FAILED, DonationStatus.REFUNDED)


def utcnow():
    return datetime.now(timezone.utc)


class Donation(Base):
    __tablename__ = "donations"

    id = Column(String, primary_key=True)                   # uuid hex, generated before order creation
    amount = Column(Numeric(12, 2), nullable=False)          # base unit (rupees), never paise
    currency = Column(String, nullable=False, default="INR")
    donor_info = Column(JSON, nullable=False)
    donation_type = Column(String, nullable=False, default="general")
    status = Column(String, nullable=False, default=DonationStatus.PENDING.value, index=True)
    order_id = Column(String, unique=True, index=True, nullable=False)
    payment_id = Column(String, index=True)
    payment_details = Column(JSON, nullable=False, default=dict)
    refund_details = Column(JSON)
    user_id = Column(String, index=True)                    # bearer actor who created it, if any
    # Bumped on every write; writers only apply against the version they read
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Donation {self.id} {self.status} {self.amount}>"

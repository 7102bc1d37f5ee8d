"""
Tracker for the three-week installment plan.

One row per weekly_installment subscription. Never deleted: a lapsed tracker
stays behind while the expiry sweep deactivates the parent subscription.
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey
from billing_service.db.base import Base
from billing_service.utils.clock import utcnow


class WeeklyInstallmentTracker(Base):
    __tablename__ = "weekly_installment_trackers"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, unique=True)
    owner_id = Column(String, nullable=False, index=True)
    week_start_date = Column(DateTime, nullable=False)  # Plan anchor
    current_week_start = Column(DateTime, nullable=False)  # Anchor of the active 7-day window
    week_number = Column(Integer, nullable=False, default=1)  # 1..3, never decreases
    downloads_used = Column(Integer, nullable=False, default=0)
    week1_paid = Column(Boolean, nullable=False, default=True)  # Covered by the activation charge
    week2_paid = Column(Boolean, nullable=False, default=False)
    week3_paid = Column(Boolean, nullable=False, default=False)
    week2_paid_at = Column(DateTime, nullable=True)
    week3_paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def week_paid(self, week: int) -> bool:
        return bool(getattr(self, f"week{week}_paid"))

    @property
    def current_week_paid(self) -> bool:
        return self.week_paid(self.week_number or 1)

    @property
    def weeks_paid(self) -> int:
        """Highest week whose payment is confirmed; week 1 counts as paid by default."""
        paid = 1
        if self.week2_paid:
            paid = 2
        if self.week3_paid:
            paid = 3
        return paid

    def __repr__(self):
        return (
            f"<WeeklyInstallmentTracker(owner_id={self.owner_id}, week={self.week_number}, "
            f"downloads={self.downloads_used}, paid={self.week1_paid}/{self.week2_paid}/{self.week3_paid})>"
        )

import uuid

from sqlalchemy import Boolean, Enum, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_sync.db import Base, TimestampMixin
from billing_sync.models.billing import BillingPlan


class Tenant(TimestampMixin, Base):
    """Local projection of a customer company.

    Company CRUD lives elsewhere; billing only reads the name/email and owns
    the denormalized ``plan`` column.
    """

    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    billing_email: Mapped[str | None] = mapped_column(String(255))
    plan: Mapped[BillingPlan] = mapped_column(
        Enum(BillingPlan), default=BillingPlan.free, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    subscription = relationship(
        "Subscription", back_populates="tenant", uselist=False
    )
    payments = relationship("Payment", back_populates="tenant")

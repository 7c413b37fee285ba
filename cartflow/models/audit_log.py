"""
Audit Log model for tracking order-affecting actions.
"""
from sqlalchemy import Column, BigInteger, String, Text, DateTime, Enum as SQLEnum
from cartflow.utils.clock import utcnow
import enum

from cartflow.database import Base, BigIntegerPK


class AuditAction(enum.Enum):
    """Enumeration of auditable actions."""
    # Checkout
    CHECKOUT_COMMITTED = "CHECKOUT_COMMITTED"

    # Orders
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDER_STATUS_CHANGED = "ORDER_STATUS_CHANGED"

    # Maintenance
    RESERVATION_SWEPT = "RESERVATION_SWEPT"


class AuditLog(Base):
    """Audit log for tracking user and system actions."""
    __tablename__ = 'audit_log'

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=True, index=True)  # NULL for system jobs
    action = Column(SQLEnum(AuditAction), nullable=False, index=True)
    resource_type = Column(String(50))  # e.g., 'order', 'checkout_attempt'
    resource_id = Column(BigInteger)
    details = Column(Text)  # JSON encoded
    ip_address = Column(String(45))
    user_agent = Column(String(255))
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog {self.action.value} by user {self.user_id} at {self.created_at}>"

"""Address book model."""
from sqlalchemy import Column, BigInteger, String, DateTime
from sqlalchemy.sql import func
from cartflow.database import Base, BigIntegerPK


class Address(Base):
    """Saved address of a user. Copied verbatim into orders."""

    __tablename__ = 'address'

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    full_name = Column(String(100), nullable=False)
    address_line1 = Column(String(200), nullable=False)
    address_line2 = Column(String(200), nullable=True)
    city = Column(String(100), nullable=False)
    state = Column(String(100), nullable=False)
    postal_code = Column(String(20), nullable=False)
    country = Column(String(100), nullable=False)
    phone_number = Column(String(20), nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    def __repr__(self):
        return f"<Address(id={self.id}, user_id={self.user_id}, city='{self.city}')>"

    def to_snapshot(self) -> dict:
        return {
            'full_name': self.full_name,
            'lines': [line for line in (self.address_line1, self.address_line2) if line],
            'city': self.city,
            'state': self.state,
            'postal_code': self.postal_code,
            'country': self.country,
            'phone': self.phone_number,
        }

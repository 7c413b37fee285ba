"""
Catalog and address book lookups.

The checkout pipeline only reads these records; writes belong to the
catalog and the address book.
"""
from typing import Optional

from cartflow.models import ProductVariant, Address
from cartflow.exceptions import NotFoundError, ReasonCode


def get_variant(session, variant_id: int) -> ProductVariant:
    """Get a variant by id or raise VARIANT_NOT_FOUND."""
    variant = session.query(ProductVariant).filter(ProductVariant.id == variant_id).first()
    if not variant:
        raise NotFoundError(f'Variant {variant_id} not found', ReasonCode.VARIANT_NOT_FOUND,
                            payload={'variant_id': variant_id})
    return variant


def get_address(session, address_id: int, user_id: Optional[int] = None) -> dict:
    """
    Address snapshot to copy verbatim into an order.

    Addresses of other users are reported as not found.
    """
    query = session.query(Address).filter(Address.id == address_id)
    if user_id is not None:
        query = query.filter(Address.user_id == user_id)
    address = query.first()
    if not address:
        raise NotFoundError(f'Address {address_id} not found', ReasonCode.ADDRESS_NOT_FOUND,
                            payload={'address_id': address_id})
    return address.to_snapshot()

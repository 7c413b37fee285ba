"""Number parsing utilities for JSON request payloads."""
from decimal import Decimal, InvalidOperation

from cartflow.exceptions import ValidationError, ReasonCode


def parse_money(value, field: str = 'amount') -> Decimal:
    """
    Parse a monetary value (number or numeric string) to a 2-place Decimal.

    Floats go through str() so 19.99 stays 19.99 instead of its binary
    approximation.

    Raises:
        ValidationError: if the value is missing, not numeric, or negative.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f'{field} is required and must be a number')

    try:
        decimal_value = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f'{field} must be a number')

    if not decimal_value.is_finite():
        raise ValidationError(f'{field} must be a number')
    if decimal_value < 0:
        raise ValidationError(f'{field} can not be negative')

    return decimal_value.quantize(Decimal('0.01'))


def parse_quantity(value, allow_zero: bool = False) -> int:
    """
    Parse a line quantity. Only whole numbers are accepted.

    Raises:
        ValidationError: INVALID_QUANTITY when not a positive integer
            (or zero, when allow_zero is set).
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError('quantity must be an integer', ReasonCode.INVALID_QUANTITY)

    if isinstance(value, str):
        value = value.strip()
        if not value.lstrip('-').isdigit():
            raise ValidationError('quantity must be an integer', ReasonCode.INVALID_QUANTITY)
        value = int(value)
    elif isinstance(value, float):
        if not value.is_integer():
            raise ValidationError('quantity must be an integer', ReasonCode.INVALID_QUANTITY)
        value = int(value)
    elif not isinstance(value, int):
        raise ValidationError('quantity must be an integer', ReasonCode.INVALID_QUANTITY)

    if value < 0 or (value == 0 and not allow_zero):
        raise ValidationError('quantity must be greater than 0', ReasonCode.INVALID_QUANTITY)

    return value

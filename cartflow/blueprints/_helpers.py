"""Request parsing shared by the JSON blueprints."""
from flask import request

from cartflow.exceptions import ValidationError


def json_payload() -> dict:
    """Request body as a dict; a missing body is an empty dict."""
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object')
    return payload


def parse_id(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be an integer')
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer')
    if parsed <= 0:
        raise ValidationError(f'{field} must be positive')
    return parsed


def parse_bool(value, field: str):
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ('true', '1', 'yes'):
        return True
    if isinstance(value, str) and value.lower() in ('false', '0', 'no'):
        return False
    raise ValidationError(f'{field} must be a boolean')

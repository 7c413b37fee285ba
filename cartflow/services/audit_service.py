"""
Audit logging service for tracking order-affecting actions.
"""
from cartflow.models.audit_log import AuditLog, AuditAction
from flask import request, has_request_context
import json
import logging

from cartflow.utils.clock import utcnow

logger = logging.getLogger(__name__)


def log_action(
    session,
    action: AuditAction,
    resource_type: str = None,
    resource_id: int = None,
    details: dict = None,
    user_id: int = None
):
    """
    Add an audit entry to the session.

    The entry is committed (or rolled back) together with the change it
    describes. user_id is None for system jobs such as the recovery sweep.

    Args:
        session: Database session
        action: AuditAction enum value
        resource_type: Type of resource affected (e.g., 'order')
        resource_id: ID of the affected resource
        details: Dict with additional details (will be JSON encoded)
        user_id: Acting user
    """
    ip_address = None
    user_agent = None
    if has_request_context():
        ip_address = request.remote_addr
        user_agent = request.headers.get('User-Agent', '')[:255]

    details_json = None
    if details:
        try:
            details_json = json.dumps(details, default=str)
        except (TypeError, ValueError) as e:
            logger.warning(f"Failed to serialize audit details: {e}")
            details_json = str(details)

    audit_entry = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details_json,
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=utcnow()
    )
    session.add(audit_entry)
    # Note: Caller is responsible for committing the session

    logger.info(f"Audit log created: {action.value} by user {user_id} on {resource_type} {resource_id}")
    return audit_entry


def get_audit_logs(
    session,
    limit: int = 100,
    offset: int = 0,
    action_filter: AuditAction = None,
    resource_type_filter: str = None,
    resource_id_filter: int = None
):
    """
    Retrieve audit logs with optional filters, newest first.
    """
    query = session.query(AuditLog)

    if action_filter:
        query = query.filter(AuditLog.action == action_filter)

    if resource_type_filter:
        query = query.filter(AuditLog.resource_type == resource_type_filter)

    if resource_id_filter is not None:
        query = query.filter(AuditLog.resource_id == resource_id_filter)

    query = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    return query.limit(limit).offset(offset).all()

"""
PayVAT - Audit Trail Service

Audit logging for financial traceability.
"""

import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from payvat.models.audit import AuditLog, AuditAction


def _jsonable(values: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """JSON columns cannot hold Decimal/UUID/datetime; store their string form."""
    if values is None:
        return None
    result = {}
    for key, value in values.items():
        if isinstance(value, (Decimal, uuid.UUID)):
            result[key] = str(value)
        elif hasattr(value, "isoformat"):
            result[key] = value.isoformat()
        elif hasattr(value, "value") and isinstance(getattr(value, "value"), str):
            result[key] = value.value
        else:
            result[key] = value
    return result


class AuditService:
    """Service for writing and reading the audit trail."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log_action(
        self,
        entity_type: str,
        entity_id: str,
        action: AuditAction,
        user_id: Optional[uuid.UUID] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLog:
        """
        Log an audit action.

        Args:
            entity_type: Type of entity (e.g., 'payment', 'vat_return')
            entity_id: ID of the affected entity
            action: Type of action performed
            user_id: ID of user who performed the action (None for webhooks)
            old_values: Previous values
            new_values: New values
            metadata: Amount, currency, processor reference, source
            description: Human readable summary
            ip_address: Client IP address
            user_agent: Client user agent

        Returns:
            Created AuditLog record
        """
        old_values = _jsonable(old_values)
        new_values = _jsonable(new_values)

        changes = None
        if old_values and new_values:
            changes = self._calculate_changes(old_values, new_values)

        audit_log = AuditLog(
            target_entity_type=entity_type,
            target_entity_id=str(entity_id),
            action=action,
            user_id=user_id,
            old_values=old_values,
            new_values=new_values,
            changes=changes,
            audit_metadata=_jsonable(metadata),
            description=description,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        self.db.add(audit_log)
        await self.db.flush()

        return audit_log

    def _calculate_changes(
        self,
        old_values: Dict[str, Any],
        new_values: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Calculate what changed between old and new values."""
        changes = {}

        all_keys = set(old_values.keys()) | set(new_values.keys())

        for key in all_keys:
            old_val = old_values.get(key)
            new_val = new_values.get(key)

            if old_val != new_val:
                changes[key] = {
                    "old": old_val,
                    "new": new_val,
                }

        return changes

"""
Audit Recorder - append-only trail of balance-affecting decisions
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union

from sqlalchemy.orm import Session

from config import Config
from models import AuditAction, AuditLog

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    """Convert Decimals, datetimes and enums so metadata survives a JSON column"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class AuditRecorder:
    """Writes AuditLog rows inside the caller's ledger transaction"""

    def __init__(self):
        self.audit_logger = logging.getLogger('audit')

    def record(
        self,
        session: Session,
        action: Union[AuditAction, str],
        entity: str,
        entity_id: Any,
        actor_user_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        """
        Append an audit entry to the current transaction.

        The row commits or rolls back together with the balance change it
        describes; nothing is written if the surrounding transaction fails.
        actor_user_id None means the system (webhook, sweep) acted.
        """
        action_value = action.value if isinstance(action, AuditAction) else str(action)
        payload = _jsonable(metadata or {})

        entry = AuditLog(
            actor_user_id=actor_user_id,
            action=action_value,
            entity=entity,
            entity_id=str(entity_id),
            audit_metadata=payload,
        )
        session.add(entry)
        session.flush()

        self.audit_logger.info(json.dumps({
            'action': action_value,
            'entity': entity,
            'entity_id': str(entity_id),
            'actor_user_id': actor_user_id,
            'metadata': payload,
        }))

        amount = (metadata or {}).get('amount')
        if isinstance(amount, Decimal) and abs(amount) >= Config.LARGE_AMOUNT_ALERT_THRESHOLD:
            logger.warning(
                f"💰 LARGE_LEDGER_OPERATION: {action_value} {entity} {entity_id} - "
                f"USD {amount:,.2f} - Actor: {actor_user_id if actor_user_id is not None else 'system'}"
            )

        return entry


# Global audit recorder instance
audit_recorder = AuditRecorder()

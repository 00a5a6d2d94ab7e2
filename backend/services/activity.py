"""Audit trail writer shared by the ledger, order book and settlement services."""
import json
from typing import Optional

from sqlalchemy.orm import Session

from models import ActivityLog


def record_activity(db: Session, entity_type: str, entity_id: int, action: str,
                    description: str, user_id: Optional[int] = None, **metadata) -> ActivityLog:
    """Adds an ActivityLog row to the session; the caller's commit persists it."""
    entry = ActivityLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        description=description,
        user_id=user_id,
        metadata_json=json.dumps({k: str(v) if v is not None else None for k, v in metadata.items()}) if metadata else None,
    )
    db.add(entry)
    return entry

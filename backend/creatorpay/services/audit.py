from sqlalchemy.orm import Session
from creatorpay.models.audit_log import AuditLog

def audit(db: Session, actor_account_id, entity_type: str, entity_id: str, action: str, data: dict):
    row = AuditLog(
        actor_account_id=actor_account_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        data=data or {},
    )
    db.add(row)

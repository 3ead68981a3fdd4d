from database import database
from models import AuditLog, AuditAction, UserRole
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Calculate the differences between before and after states.
    
    Returns a dict with:
    - added: fields that exist in after but not in before
    - removed: fields that exist in before but not in after
    - changed: fields that exist in both but have different values
    """
    if not before and not after:
        return {}
    
    if not before:
        return {"added": after, "removed": {}, "changed": {}}
    
    if not after:
        return {"added": {}, "removed": before, "changed": {}}
    
    diff = {"added": {}, "removed": {}, "changed": {}}
    
    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)
        
        if key not in before:
            diff["added"][key] = after_val
        elif key not in after:
            diff["removed"][key] = before_val
        elif before_val != after_val:
            diff["changed"][key] = {"from": before_val, "to": after_val}
    
    return {k: v for k, v in diff.items() if v}

async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[UserRole] = None,
    actor_id: Optional[str] = None,
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    auto_diff: bool = True
) -> str:
    """Create an audit log entry; billing actions never fail because of it.
    
    Args:
        action: The audit action type
        actor_role: Role of whoever triggered the action (user, admin, system)
        actor_id: ID of the actor
        user_id: ID of the affected account
        resource_type: Type of resource (e.g. 'subscription', 'stripe_event')
        resource_id: Provider or internal id of the resource
        before_state / after_state: Entitlement fields before and after
        metadata: Additional metadata
        auto_diff: If True, store a diff of before/after in metadata
    """
    try:
        db = database.get_db()
        
        diff = None
        if auto_diff and before_state and after_state:
            diff = calculate_diff(before_state, after_state)
        
        enriched_metadata = metadata.copy() if metadata else {}
        if diff:
            enriched_metadata["diff"] = diff
        
        audit_log = AuditLog(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata if enriched_metadata else None,
        )
        
        doc = audit_log.model_dump()
        doc["timestamp"] = doc["timestamp"].isoformat() if isinstance(doc["timestamp"], datetime) else doc["timestamp"]
        
        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        return ""

async def get_audit_logs_for_user(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Billing audit trail for one account, newest first."""
    try:
        db = database.get_db()
        cursor = db.audit_logs.find({"user_id": user_id}, {"_id": 0}).sort("timestamp", -1).limit(limit)
        return await cursor.to_list(length=limit)
    except Exception as e:
        logger.error(f"Failed to get audit logs for user: {e}")
        return []

from typing import Any, List

import orjson
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .helpers import new_id, now_ts
from .model.db import AuditLog

ACTOR_SYSTEM = "system"
ACTOR_ORGANIZER = "organizer"
ACTOR_STAFF = "staff"
ACTOR_ADMIN = "admin"


# UN-GATED: runs inside the caller's transaction so the audit row commits
# (or rolls back) with the action it describes
async def record(
    db: AsyncSession,
    actor_type: str,
    actor_id: str,
    action: str,
    target_type: str,
    target_id: str,
    **meta: Any,
) -> AuditLog:
    row = AuditLog(
        id=new_id(),
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        meta=orjson.dumps(meta).decode() if meta else None,
        created_at=now_ts(),
    )
    db.add(row)
    return row


async def for_target(db: AsyncSession, target_id: str) -> List[AuditLog]:
    rows = await db.execute(
        select(AuditLog)
        .where(AuditLog.target_id == target_id)
        .order_by(AuditLog.created_at)
    )
    return list(rows.scalars())

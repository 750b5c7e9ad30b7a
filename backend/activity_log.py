import json
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from context import ActorContext
from models import StaffActivity

logger = logging.getLogger(__name__)


async def log_staff_activity(
    db: AsyncSession,
    actor: ActorContext,
    action: str,
    entity: str,
    entity_id: Optional[int] = None,
    details: Optional[dict] = None
):
    """
    Log finance activity for audit purposes. Runs after the core commit.

    Writes through its own session on the same engine so a failure here can
    never disturb the caller's session or the objects it already returned.
    """
    async with AsyncSession(db.bind, expire_on_commit=False) as session:
        session.add(StaffActivity(
            tenant_id=actor.tenant_id,
            actor_id=actor.actor_id,
            actor_role=actor.role,
            action=action,
            entity=entity,
            entity_id=entity_id,
            details=json.dumps(details) if details else None
        ))
        await session.commit()
    logger.debug(f"Activity logged: {action} on {entity} {entity_id}")

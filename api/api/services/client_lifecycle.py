"""Client lifecycle maintenance run by operators."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime

from agency_core.state.repository import ClientRepository
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


async def archive_expired_cancellations(
    session: AsyncSession,
    *,
    today: date | None = None,
    agency_id: str | None = None,
) -> list[str]:
    """Archive canceled clients whose end-of-service date has been reached.

    Returns the archived client ids.  The session is committed.
    """
    day = today or datetime.now(UTC).date()
    ids = await ClientRepository(session, agency_id).archive_expired_cancellations(day)
    await session.commit()
    if ids:
        logger.info("Archived %d canceled client(s) with end date on or before %s", len(ids), day.isoformat())
    return ids

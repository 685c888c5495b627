"""Operator queue: persisted alerts for events that need manual attention."""

import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rbridge.ledger.database import get_db
from rbridge.ledger.models import AlertKind, AlertSeverity, OperatorAlert
from rbridge.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)


async def record_alert(
    session_factory: Optional[async_sessionmaker[AsyncSession]],
    kind: AlertKind,
    severity: AlertSeverity,
    message: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[Any] = None,
) -> OperatorAlert:
    """File an alert unless an unresolved one exists for the same reference.

    Consistency alerts are logged at ERROR, warnings at WARNING.
    """
    log = logger.error if severity == AlertSeverity.CONSISTENCY else logger.warning
    log(f"[{kind.value}] {message}")

    async with get_db(session_factory) as session:
        repo = LedgerRepository(session)
        existing = await repo.get_open_alert(kind, reference_type, reference_id)
        if existing is not None:
            return existing
        return await repo.create_alert(kind, severity, message, reference_type, reference_id)

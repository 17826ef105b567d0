"""Run-visible event logging."""

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from gapminer.models import Log

logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def log_event(
    db: Session,
    run_id: UUID,
    level: str,
    message: str,
    metadata: Optional[Dict[str, Any]] = None,
    agent_ref: Optional[UUID] = None,
) -> Log:
    """
    Record an event both in the application log and as a Log row.

    The row is added to the session but not committed; it lands with the
    caller's next commit.
    """
    logger.log(_LEVELS.get(level, logging.INFO), f"[run {run_id}] {message}")

    entry = Log(
        run_id=run_id,
        agent_ref=agent_ref,
        level=level if level in _LEVELS else "info",
        message=message,
        metadata_=metadata,
    )
    db.add(entry)
    return entry

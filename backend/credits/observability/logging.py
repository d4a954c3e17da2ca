"""Structured logging helper for credit ledger events."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("credits")


def log_credit_event(*, message: str, account_id: Optional[str] = None, actor: Optional[str] = None,
                     idempotency_key: Optional[str] = None, extra: Optional[Dict[str, Any]] = None,
                     level: int = logging.INFO) -> None:
    payload: Dict[str, Any] = {"message": message}
    if account_id:
        payload["account_id"] = str(account_id)
    if actor:
        payload["actor"] = actor
    if idempotency_key:
        payload["idempotency_key"] = idempotency_key
    if extra:
        payload.update(extra)
    logger.log(level, payload)

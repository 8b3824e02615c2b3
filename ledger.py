"""
Append-only balance ledger.

Counters on account documents (points, cash, inventory...) are only changed
through `apply`, which issues one atomic $inc and records one LedgerEntry per
changed field. `balance` re-derives a counter from the ledger.
"""

import logging
from typing import Dict, Optional

from database import create_document
from helpers import now, to_object_id
from schemas import LedgerEntry

logger = logging.getLogger(__name__)


def apply(db, account_type: str, account_id, changes: Dict[str, float], source: str, source_id, reason: str,
          metadata: Optional[dict] = None, guard: Optional[dict] = None) -> bool:
    """Apply the deltas. With a guard filter nothing is written unless the account matches it."""
    changes = {k: v for k, v in changes.items() if v}
    if not changes:
        return True
    query = {"_id": to_object_id(account_id)}
    query.update(guard or {})
    result = db[account_type].update_one(query, {"$inc": changes, "$set": {"updated_at": now()}})
    if not result.modified_count:
        return False
    for field, delta in changes.items():
        create_document(db, "ledger", LedgerEntry(
            account_type=account_type,
            account_id=str(account_id),
            field=field,
            delta=delta,
            source=source,
            source_id=str(source_id),
            reason=reason,
            metadata=metadata or {},
        ))
    logger.info("%s %s %s: %s", reason, account_type, account_id, changes)
    return True


def balance(db, account_id, field: str) -> float:
    return sum(e["delta"] for e in db["ledger"].find({"account_id": str(account_id), "field": field}))


def entries_for(db, source: str, source_id) -> list:
    return list(db["ledger"].find({"source": source, "source_id": str(source_id)}))

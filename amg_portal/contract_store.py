"""
Contract store: local read-through cache of openIMIS family contracts.

Filled by the contract sync job and read by the coverage resolver as its
last-resort policy source. Rows are keyed by contract id and only ever
replaced wholesale, so readers never see a half-written row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from amg_portal.coverage import parse_timestamp
from amg_portal.fhir import Contract

logger = logging.getLogger(__name__)


# sync_status = {
#   "status": "idle" | "in_progress" | "completed" | "failed",
#   "started_at": str | None,
#   "completed_at": str | None,
#   "total_contracts": int,
#   "contracts_synced": int,
#   "error": str | None,
# }


@dataclass(frozen=True)
class ContractRow:
    id: str
    group_id: str
    contract: Contract
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    has_payment: bool
    last_updated: str

    def in_period(self, now: datetime) -> bool:
        if self.period_start is None or self.period_end is None:
            return False
        return self.period_start <= now <= self.period_end

    def is_active(self, now: datetime) -> bool:
        return self.in_period(now) and self.has_payment


def row_from_contract(contract: Contract) -> Optional[ContractRow]:
    """Build a cache row, or None for contracts without an id or a Group subject."""
    if not contract.id:
        logger.warning("Skipping contract without id")
        return None
    group_id = contract.group_id()
    if not group_id:
        return None
    period = contract.period()
    return ContractRow(
        id=contract.id,
        group_id=group_id,
        contract=contract,
        period_start=parse_timestamp(period.start) if period else None,
        period_end=parse_timestamp(period.end) if period else None,
        has_payment=contract.has_payment(),
        last_updated=datetime.now(timezone.utc).isoformat(),
    )


@dataclass
class ContractStore:
    rows: dict[str, ContractRow] = field(default_factory=dict)
    sync_status: dict = field(default_factory=lambda: {
        "status": "idle",
        "started_at": None,
        "completed_at": None,
        "total_contracts": 0,
        "contracts_synced": 0,
        "error": None,
    })

    def __len__(self) -> int:
        return len(self.rows)

    def upsert(self, rows: list[ContractRow]) -> int:
        for row in rows:
            self.rows[row.id] = row
        return len(rows)

    def for_group(self, group_id: str) -> list[ContractRow]:
        return [row for row in self.rows.values() if row.group_id == group_id]

    def find_for_group(self, group_id: str, now: Optional[datetime] = None) -> Optional[ContractRow]:
        """
        The contract that best describes a group's cover right now: an
        in-period paid one if any, else the one that ends last.
        """
        now = now or datetime.now(timezone.utc)
        candidates = self.for_group(group_id)
        if not candidates:
            return None
        for row in candidates:
            if row.is_active(now):
                return row
        floor = datetime.min.replace(tzinfo=timezone.utc)
        return max(candidates, key=lambda row: row.period_end or floor)

    def clear(self) -> None:
        self.rows.clear()


contract_store = ContractStore()

"""Contract sync: walks the upstream Contract pages into the local contract store."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from amg_portal.amg_client import AmgClient
from amg_portal.contract_store import ContractStore, row_from_contract
from amg_portal.errors import AuthError
from amg_portal.fhir import Contract

logger = logging.getLogger(__name__)


async def sync_contracts(
    client: AmgClient,
    store: ContractStore,
    max_pages: int = 10,
    page_size: int = 1000,
) -> dict:
    """
    Fetch up to ``max_pages`` Contract pages and upsert every contract whose
    subject is a Group. Returns the final sync status.
    """
    status = store.sync_status
    status.update(
        status="in_progress",
        started_at=datetime.now(timezone.utc).isoformat(),
        completed_at=None,
        total_contracts=0,
        contracts_synced=0,
        error=None,
    )
    logger.info("Contract sync started (max %d pages)", max_pages)

    try:
        await client.login()
    except AuthError as exc:
        status.update(status="failed", error=str(exc), completed_at=datetime.now(timezone.utc).isoformat())
        logger.error("Contract sync aborted: %s", exc)
        return status

    next_url = None
    for page_number in range(1, max_pages + 1):
        bundle = await client.get_contracts_page(next_url, count=page_size)
        if bundle is None:
            logger.warning("Contract page %d could not be fetched; stopping", page_number)
            if page_number == 1:
                status.update(
                    status="failed",
                    error="Contract API request failed",
                    completed_at=datetime.now(timezone.utc).isoformat(),
                )
                return status
            break
        rows = [
            row for row in (row_from_contract(c) for c in bundle.resources(Contract))
            if row is not None
        ]
        store.upsert(rows)
        status["total_contracts"] = bundle.total or status["total_contracts"]
        status["contracts_synced"] += len(bundle.entry)
        logger.info(
            "Contract page %d: %d contracts, %d cached (%d/%d scanned)",
            page_number, len(bundle.entry), len(rows),
            status["contracts_synced"], status["total_contracts"],
        )
        next_url = bundle.next_url()
        if not next_url:
            break
    else:
        logger.info("Contract sync stopped at the %d page limit", max_pages)

    status.update(status="completed", completed_at=datetime.now(timezone.utc).isoformat())
    logger.info("Contract sync completed: %d contracts cached", len(store))
    return status

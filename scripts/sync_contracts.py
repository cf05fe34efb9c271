#!/usr/bin/env python3
"""
Fill the contract cache once from the AMG Contract resources.

    python scripts/sync_contracts.py [max_pages]

The running server keeps its own cache; this is for checking the AMG
credentials and the Contract feed from the command line.
"""

import asyncio
import os
import sys

# Allow running from repo root
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from dotenv import load_dotenv
load_dotenv()

from amg_portal.amg_client import AmgClient
from amg_portal.config import settings
from amg_portal.contract_store import ContractStore
from amg_portal.contract_sync import sync_contracts


async def run(max_pages: int) -> None:
    store = ContractStore()
    async with AmgClient.from_settings(settings) as client:
        status = await sync_contracts(
            client, store, max_pages=max_pages, page_size=settings.contract_sync_page_size
        )

    print(f"Sync {status['status']}: scanned {status['contracts_synced']} / {status['total_contracts']}")
    if status["error"]:
        print(f"  Error: {status['error']}")
    groups = {row.group_id for row in store.rows.values()}
    print(f"  Cached contracts: {len(store)} across {len(groups)} groups")


def main():
    max_pages = int(sys.argv[1]) if len(sys.argv) > 1 else settings.contract_sync_max_pages
    print(f"Syncing contracts from: {settings.amg_base_url} (max {max_pages} pages)\n")
    asyncio.run(run(max_pages))


if __name__ == "__main__":
    main()

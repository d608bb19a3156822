#!/usr/bin/env python3
"""
List expired gifts that need manual reconciliation.

An expired gift was paid for but never delivered, so the sender is owed a
refund or a manual purchase. This script prints each one with its failure
reason and purchase signature.

Usage:
    cd backend
    python list_expired_gifts.py [--since YYYY-MM-DD] [--json]

Options:
    --since    Only list gifts created on or after this date
    --json     Print one JSON object per line instead of a table
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime
from typing import List, Optional

# Add parent directory to path
sys.path.insert(0, ".")

from giftfuture.models.gift import Gift, GiftStatus
from giftfuture.services.gift_store import GiftStore


def gift_record(gift: Gift) -> dict:
    return {
        "id": gift.id,
        "session_id": gift.idempotency_key,
        "market_ticker": gift.market_ticker,
        "side": gift.side,
        "cost_usdc": str(gift.cost_usdc),
        "sender_id": gift.sender_id,
        "sender_email": gift.sender_email,
        "failure_reason": gift.failure_reason,
        "purchase_tx_sig": gift.purchase_tx_sig,
        "created_at": gift.created_at.isoformat() if gift.created_at else None,
    }


async def find_expired_gifts(
    store: GiftStore,
    since: Optional[datetime] = None,
) -> List[Gift]:
    gifts = await store.list_by_status(GiftStatus.EXPIRED)
    if since is not None:
        gifts = [g for g in gifts if g.created_at and g.created_at >= since]
    return gifts


async def list_expired_gifts(since: Optional[datetime] = None, as_json: bool = False):
    gifts = await find_expired_gifts(GiftStore(), since)

    if not gifts:
        if not as_json:
            print("No expired gifts found.")
        return

    for gift in gifts:
        record = gift_record(gift)
        if as_json:
            print(json.dumps(record))
            continue

        print(f"Gift: {record['id']} ({record['market_ticker']} {record['side']})")
        print(f"  Session: {record['session_id']}")
        print(f"  Cost: {record['cost_usdc']} USDC")
        print(f"  Sender: {record['sender_email'] or record['sender_id']}")
        print(f"  Reason: {record['failure_reason'] or 'unknown'}")
        if record["purchase_tx_sig"]:
            print(f"  Purchase tx: {record['purchase_tx_sig']}")
        print(f"  Created: {record['created_at']}")
        print()

    if not as_json:
        print(f"{len(gifts)} expired gift(s) need reconciliation.")


def main():
    parser = argparse.ArgumentParser(description="List expired gifts")
    parser.add_argument("--since", type=datetime.fromisoformat, default=None)
    parser.add_argument("--json", action="store_true", dest="as_json")
    args = parser.parse_args()

    asyncio.run(list_expired_gifts(args.since, args.as_json))


if __name__ == "__main__":
    main()

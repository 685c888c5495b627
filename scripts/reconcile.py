#!/usr/bin/env python3
"""Bridge Reconciliation Script.

Re-drives deposits stuck between confirmation, mint and credit, then
compares wrapped supply counters with the deposit and withdrawal records.
Mismatches are written to the operator queue; nothing is auto-corrected.

Usage:
    python scripts/reconcile.py [--json] [--alerts]

Options:
    --json    Print the report as JSON
    --alerts  Also list unresolved operator alerts
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dotenv import load_dotenv

from rbridge.adapters import close_adapters
from rbridge.ledger.database import close_db, get_db, init_db
from rbridge.ledger.repository import LedgerRepository
from rbridge.services.bridge import Bridge

load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def print_alerts() -> None:
    async with get_db() as session:
        alerts = await LedgerRepository(session).list_alerts(resolved=False)

    print(f"\nUnresolved alerts: {len(alerts)}")
    for alert in alerts:
        ref = f"{alert.reference_type}:{alert.reference_id}" if alert.reference_type else "-"
        print(f"  #{alert.id} [{alert.severity}] {alert.kind} {ref} - {alert.message}")


async def run(args: argparse.Namespace) -> int:
    await init_db()
    # Manual processing only: interrupted withdrawals are reported, not resumed
    bridge = Bridge(auto_process=False)
    try:
        await bridge.seed()
        report = await bridge.orchestrator.reconcile()

        if args.json:
            print(json.dumps(report.to_dict(), indent=2))
        else:
            print("=" * 60)
            print("RECONCILIATION REPORT")
            print("=" * 60)
            print(f"Deposits confirmed:   {len(report.confirmed)} {report.confirmed or ''}")
            print(f"Deposits minted:      {len(report.minted)} {report.minted or ''}")
            print(f"Deposits credited:    {len(report.credited)} {report.credited or ''}")
            print(f"Interrupted withdrawals: {report.interrupted_withdrawals or 'none'}")
            if report.mismatches:
                print("\nSupply mismatches:")
                for line in report.mismatches:
                    print(f"  - {line}")
            else:
                print("\nSupply counters match records")

        if args.alerts:
            await print_alerts()

        return 1 if report.mismatches else 0
    finally:
        await bridge.stop()
        await close_adapters()
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Reconcile wrapped supply with deposit and withdrawal records")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    parser.add_argument("--alerts", action="store_true", help="List unresolved operator alerts")
    args = parser.parse_args()

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Run one auto-resolve sweep and print the result

Intended for cron when the in-process scheduler is disabled:
    * * * * * python scripts/run_auto_resolve.py --quiet
Exit status is 1 when any due trade could not be settled.
"""

import argparse
import json
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.authorization import Actor
from services.trade_engine import SweepResult, TradeEngine


def run_sweep(session_factory=None) -> SweepResult:
    """Scheduled outcomes settle at the open price, so no price lookup happens"""
    engine = TradeEngine(session_factory=session_factory)
    return engine.auto_resolve_due(Actor.system())


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Settle due trades that carry a scheduled admin result")
    parser.add_argument("--quiet", action="store_true", help="Only print when a trade failed to settle")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.WARNING if args.quiet else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    result = run_sweep()
    if not args.quiet or result.errors:
        print(json.dumps(result.to_dict(), indent=2))
    return 1 if result.errors else 0


if __name__ == "__main__":
    sys.exit(main())

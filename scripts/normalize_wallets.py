#!/usr/bin/env python3
"""
Normalize wallet accounts

Merges users created more than once for the same wallet (case variants,
email-only logins) into a single account, lower-cases wallet addresses and
rewrites hex emails to <address>@wallet.local. Idempotent; re-run safely.
"""

import argparse
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.authorization import Actor
from services.user_service import UserService


def normalize(session_factory=None) -> dict:
    return UserService(session_factory=session_factory).normalize_wallet_accounts(Actor.system())


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Merge duplicate wallet accounts")
    parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    try:
        summary = normalize()
    except Exception as e:
        print(f"❌ Normalization failed: {e}")
        return 1

    print(
        f"Wallet normalization complete. Deduped {summary['deduped']} duplicate users, "
        f"updated {summary['updated']} records."
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())

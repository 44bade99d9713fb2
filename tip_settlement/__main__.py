"""
Operator CLI

    python -m tip_settlement stats
    python -m tip_settlement tips alice
    python -m tip_settlement uncollected
"""

import argparse
import sys

from loguru import logger

from .config import DEFAULT_CONFIG_PATH, load_config, setup_logging
from .transaction_history import TipHistoryDB
from .wallet_store import SQLiteWalletStore


def cmd_stats(config) -> int:
    store = SQLiteWalletStore(config.db_path)
    history = TipHistoryDB(config.db_path)
    try:
        stats = history.get_statistics()
        print("\n" + "=" * 60)
        print("TIP STATISTICS")
        print("=" * 60)
        print(f"Total Users:          {store.count_funding_wallets()}")
        print(f"Total Tips:           {stats['total_tips']}")
        print(f"Total Volume:         {stats['total_volume']}")
        print(f"Fees Collected:       {stats['fees_collected']}")
        print(f"Fees Uncollected:     {stats['fees_uncollected']} ({stats['tips_missing_fee']} tips)")
        print("=" * 60 + "\n")
    finally:
        store.close()
        history.close()
    return 0


def cmd_tips(config, username: str) -> int:
    history = TipHistoryDB(config.db_path)
    try:
        records = history.get_tips_for_user(username.lstrip('@').lower())
        if not records:
            print(f"No tips for @{username}")
            return 0
        for record in records:
            print(f"{record.created_at.isoformat()}  {record.amount:>14}  from {record.from_identity}  {record.tx_reference}")
    finally:
        history.close()
    return 0


def cmd_uncollected(config) -> int:
    history = TipHistoryDB(config.db_path)
    try:
        for record in history.get_uncollected_fees():
            print(f"{record.tx_reference}  fee {record.fee_amount}  from {record.from_identity}")
        for error in history.get_errors():
            print(f"[{error['error_type']}] {error['transaction_signature']}: {error['error_message']}")
    finally:
        history.close()
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="tip_settlement", description="Tip settlement operator tools")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to YAML config")
    parser.add_argument("--log-level", default="WARNING", help="Log level for stderr")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("stats", help="User count, volume and fee totals")
    tips = sub.add_parser("tips", help="Tips received by a username")
    tips.add_argument("username")
    sub.add_parser("uncollected", help="Tips with uncollected fees and recorded errors")

    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = load_config(args.config)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    if args.command == "stats":
        return cmd_stats(config)
    if args.command == "tips":
        return cmd_tips(config, args.username)
    return cmd_uncollected(config)


if __name__ == "__main__":
    sys.exit(main())

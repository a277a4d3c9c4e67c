#!/usr/bin/env python3
"""
adjust_balance.py

Operator tooling for the account ledger and the reconciliation queue.

Every balance change goes through database.adjust_balance, the same guarded
update the order workflow debits with, so a correction can never push a
balance below zero or race an in-flight order.

Usage:
  python3 adjust_balance.py credit <user_id> <amount>
  python3 adjust_balance.py debit <user_id> <amount>
  python3 adjust_balance.py reconciliation
  python3 adjust_balance.py resolve <entry_id>
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from config import load_settings
from database import (
    adjust_balance,
    init_engine,
    list_open_reconciliation,
    resolve_reconciliation_entry,
)
from pricing import CHARGE_PLACES, round_money

LOG = logging.getLogger("adjust_balance")


def _amount(raw: str) -> Decimal:
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {raw!r}") from None
    if not value.is_finite() or value <= 0:
        raise argparse.ArgumentTypeError("amount must be a positive number")
    return round_money(value, CHARGE_PLACES)


def _database_url() -> str:
    load_dotenv()
    db_url = os.getenv("DATABASE_URL")
    try:
        db_url = load_settings().database_url or db_url
    except ValidationError:
        # Admin tooling only needs the database; the panel settings may be absent.
        pass
    if not db_url:
        raise SystemExit("DATABASE_URL is not set (and config.py could not provide it).")
    return db_url


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ledger corrections and reconciliation queue")
    sub = parser.add_subparsers(dest="command", required=True)

    for name in ("credit", "debit"):
        p = sub.add_parser(name, help=f"{name} a user's balance")
        p.add_argument("user_id", type=int)
        p.add_argument("amount", type=_amount)

    sub.add_parser("reconciliation", help="list vendor orders awaiting manual reconciliation")

    p = sub.add_parser("resolve", help="mark a reconciliation entry as handled")
    p.add_argument("entry_id", type=int)
    return parser


async def run(args: argparse.Namespace) -> int:
    engine, Session = init_engine(_database_url())
    try:
        async with Session() as session:
            async with session.begin():
                if args.command in ("credit", "debit"):
                    delta = args.amount if args.command == "credit" else -args.amount
                    new_balance = await adjust_balance(session, args.user_id, delta)
                    if new_balance is None:
                        print(f"Rejected: user {args.user_id} missing or balance would go negative.")
                        return 1
                    LOG.info("%s user=%s amount=%s balance=%s", args.command, args.user_id, args.amount, new_balance)
                    print(f"User {args.user_id} balance is now {new_balance}")
                    return 0

                if args.command == "resolve":
                    if not await resolve_reconciliation_entry(session, args.entry_id):
                        print(f"No open reconciliation entry {args.entry_id}.")
                        return 1
                    print(f"Entry {args.entry_id} resolved.")
                    return 0

                entries = await list_open_reconciliation(session)
                if not entries:
                    print("No open reconciliation entries.")
                for e in entries:
                    print(
                        f"#{e.id} {e.created_at:%Y-%m-%d %H:%M} user={e.user_id} vendor_order={e.api_order_id} "
                        f"service={e.service_id} qty={e.quantity} amount={e.amount} reason={e.reason}"
                    )
                return 0
    finally:
        await engine.dispose()


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("Interrupted.")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Sequence

from config import AppSettings, config
from db.db import init_db
from domain.account import DEFAULT_CATEGORY, Account
from domain.base_types import AccountType, AssetKind
from domain.currency import Currency
from domain.errors import LedgerError
from domain.holdings import HoldingFilter
from domain.transaction import TransactionFilter, TransactionType
from importers.csv_importer import import_csv
from services.ledger_service import LedgerService
from utils.formatting import format_decimal
from utils.portfolio_summary import render_holdings, render_portfolio, render_rate_history, render_transactions

logger = logging.getLogger(__name__)


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a decimal number: {value!r}") from None


def _timestamp(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {value!r}") from None


def _price(value: str) -> tuple[str, Decimal]:
    asset, sep, amount = value.partition("=")
    if not sep or not asset:
        raise argparse.ArgumentTypeError(f"expected ASSET=PRICE, got {value!r}")
    return asset, _decimal(amount)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Local multi-currency portfolio ledger with average cost basis.")
    parser.add_argument("--db-file", type=Path, default=None, help="SQLite file (default from settings)")
    commands = parser.add_subparsers(dest="command", required=True)

    init = commands.add_parser("init", help="Create the database and seed default currencies")
    init.add_argument("--reset", action="store_true", help="Delete the existing database first")

    currency = commands.add_parser("currency", help="Manage currencies")
    currency_cmds = currency.add_subparsers(dest="action", required=True)
    currency_list = currency_cmds.add_parser("list")
    currency_list.add_argument("--enabled-only", action="store_true")
    currency_add = currency_cmds.add_parser("add")
    currency_add.add_argument("code")
    currency_add.add_argument("name")
    currency_add.add_argument("--kind", choices=[k.value for k in AssetKind], required=True)
    currency_add.add_argument("--precision", type=int, required=True)
    currency_add.add_argument("--symbol", default="")
    for action in ("enable", "disable"):
        currency_cmds.add_parser(action).add_argument("code")

    account = commands.add_parser("account", help="Manage accounts")
    account_cmds = account.add_subparsers(dest="action", required=True)
    account_list = account_cmds.add_parser("list")
    account_list.add_argument("--category")
    account_add = account_cmds.add_parser("add")
    account_add.add_argument("name")
    account_add.add_argument("--type", dest="account_type", choices=[t.value for t in AccountType], required=True)
    account_add.add_argument("--category", default=DEFAULT_CATEGORY)
    account_add.add_argument("--sync", action="store_true")
    account_cmds.add_parser("delete").add_argument("name")
    account_sync = account_cmds.add_parser("sync")
    account_sync.add_argument("name")
    account_sync.add_argument("state", choices=["on", "off"])

    tx = commands.add_parser("tx", help="Record, list and void transactions")
    tx_cmds = tx.add_subparsers(dest="action", required=True)
    tx_record = tx_cmds.add_parser("record")
    tx_record.add_argument("type", choices=[t.value for t in TransactionType if t != TransactionType.VOID])
    tx_record.add_argument("--at", type=_timestamp, required=True)
    tx_record.add_argument("--account", required=True)
    tx_record.add_argument("--asset", required=True)
    tx_record.add_argument("--quantity", type=_decimal, required=True)
    tx_record.add_argument("--price", type=_decimal)
    tx_record.add_argument("--price-currency")
    tx_record.add_argument("--cost-basis", type=_decimal)
    tx_record.add_argument("--fee", type=_decimal, default=Decimal(0))
    tx_record.add_argument("--fee-asset")
    tx_record.add_argument("--to-account")
    tx_record.add_argument("--to-asset")
    tx_record.add_argument("--to-quantity", type=_decimal)
    tx_record.add_argument("--rate", type=_decimal)
    tx_record.add_argument("--notes")
    tx_record.add_argument("--external-id")
    tx_list = tx_cmds.add_parser("list")
    tx_list.add_argument("--account")
    tx_list.add_argument("--asset")
    tx_list.add_argument("--since", type=_timestamp)
    tx_list.add_argument("--until", type=_timestamp)
    tx_list.add_argument("--type", dest="tx_type", choices=[t.value for t in TransactionType])
    tx_void = tx_cmds.add_parser("void")
    tx_void.add_argument("transaction_id", type=int)
    tx_void.add_argument("--notes")

    initial = commands.add_parser("initial-balance", help="Record an opening balance with a known cost basis")
    initial.add_argument("account")
    initial.add_argument("asset")
    initial.add_argument("quantity", type=_decimal)
    initial.add_argument("cost_basis", type=_decimal)
    initial.add_argument("--at", type=_timestamp)

    holdings = commands.add_parser("holdings", help="Show holdings")
    holdings.add_argument("--account")
    holdings.add_argument("--category")
    holdings.add_argument("--asset")
    holdings.add_argument("--hide-zero", action="store_true")

    rate = commands.add_parser("rate", help="Manage exchange rates")
    rate_cmds = rate.add_subparsers(dest="action", required=True)
    rate_set = rate_cmds.add_parser("set")
    rate_set.add_argument("base")
    rate_set.add_argument("quote")
    rate_set.add_argument("rate", type=_decimal)
    rate_set.add_argument("--at", type=_timestamp)
    rate_set.add_argument("--note")
    rate_get = rate_cmds.add_parser("get")
    rate_get.add_argument("base")
    rate_get.add_argument("quote")
    rate_get.add_argument("--at", type=_timestamp)
    rate_history = rate_cmds.add_parser("history")
    rate_history.add_argument("base")
    rate_history.add_argument("quote")

    portfolio = commands.add_parser("portfolio", help="Value holdings with supplied prices")
    portfolio.add_argument("--price", type=_price, action="append", default=[], metavar="ASSET=PRICE")
    portfolio.add_argument("--currency")

    import_cmd = commands.add_parser("import", help="Import transactions from a CSV file")
    import_cmd.add_argument("path", type=Path)

    commands.add_parser("verify", help="Compare stored holdings with a journal replay")
    commands.add_parser("repair", help="Replace stored holdings with a journal replay")
    return parser


def _record_request(args: argparse.Namespace) -> dict[str, object]:
    data: dict[str, object] = {
        "type": args.type,
        "timestamp": args.at,
        "notes": args.notes,
        "external_id": args.external_id,
    }
    if args.type == TransactionType.TRANSFER:
        data.update(
            from_account=args.account,
            to_account=args.to_account,
            asset=args.asset,
            quantity=args.quantity,
            fee=args.fee,
            fee_asset=args.fee_asset,
        )
    elif args.type == TransactionType.SWAP:
        data.update(
            account=args.account,
            from_asset=args.asset,
            from_quantity=args.quantity,
            to_asset=args.to_asset,
            to_quantity=args.to_quantity,
            rate=args.rate,
        )
    else:
        data.update(
            account=args.account,
            asset=args.asset,
            quantity=args.quantity,
            price=args.price,
            price_currency=args.price_currency,
            fee=args.fee,
            fee_asset=args.fee_asset,
        )
        if args.type == TransactionType.BUY:
            data["cost_basis"] = args.cost_basis
    return data


def run(args: argparse.Namespace, settings: AppSettings) -> None:
    session = init_db(
        settings.echo_sql,
        db_file=args.db_file or settings.db_file,
        reset=args.command == "init" and args.reset,
        lock_timeout=settings.db_lock_timeout,
    )
    with session:
        _dispatch(LedgerService.from_settings(session, settings), args)


def _dispatch(service: LedgerService, args: argparse.Namespace) -> None:
    if args.command == "init":
        added = service.currencies.seed_defaults()
        print(f"Database ready; seeded {len(added)} currencies")
    elif args.command == "currency":
        _run_currency(service, args)
    elif args.command == "account":
        _run_account(service, args)
    elif args.command == "tx":
        _run_tx(service, args)
    elif args.command == "initial-balance":
        result = service.record_initial_balance(
            args.account, args.asset, args.quantity, args.cost_basis, timestamp=args.at
        )
        print(f"Recorded initial balance as transaction #{result.transaction_id}")
    elif args.command == "holdings":
        holding_filter = HoldingFilter(
            account=args.account, category=args.category, asset=args.asset, include_zero=not args.hide_zero
        )
        print(render_holdings(service.get_holdings(holding_filter)))
    elif args.command == "rate":
        _run_rate(service, args)
    elif args.command == "portfolio":
        print(render_portfolio(service.portfolio_view(dict(args.price), currency=args.currency)))
    elif args.command == "import":
        summary = import_csv(service, args.path)
        print(f"Imported {summary.imported}, duplicates {summary.duplicates}, errors {len(summary.errors)}")
        for error in summary.errors:
            print(f"  line {error.line}: {error.message}")
    elif args.command == "verify":
        service.verify_integrity()
        print("Holdings match the journal")
    elif args.command == "repair":
        repaired = service.repair_holdings()
        print(f"Rebuilt {len(repaired)} holdings from the journal")


def _run_currency(service: LedgerService, args: argparse.Namespace) -> None:
    if args.action == "list":
        for currency in service.currencies.list(include_disabled=not args.enabled_only):
            state = "" if currency.enabled else " (disabled)"
            print(f"{currency.code:<6} {currency.kind.value:<11} {currency.precision:>2}  {currency.name}{state}")
    elif args.action == "add":
        currency = Currency(
            code=args.code, name=args.name, symbol=args.symbol, kind=AssetKind(args.kind), precision=args.precision
        )
        print(f"Added {service.currencies.add(currency).code}")
    else:
        currency = service.currencies.set_enabled(args.code, args.action == "enable")
        print(f"{currency.code} {'enabled' if currency.enabled else 'disabled'}")


def _run_account(service: LedgerService, args: argparse.Namespace) -> None:
    if args.action == "list":
        for account in service.accounts.list(category=args.category):
            flags = " (archived)" if account.archived else ""
            print(f"{account.name:<24} {account.account_type.value:<16} {account.category}{flags}")
    elif args.action == "add":
        account = Account(
            name=args.name,
            account_type=AccountType(args.account_type),
            category=args.category,
            sync_enabled=args.sync,
        )
        print(f"Added {service.accounts.add(account).name}")
    elif args.action == "delete":
        print(f"Archived {service.accounts.delete(args.name).name}")
    else:
        account = service.accounts.set_sync_enabled(args.name, args.state == "on")
        print(f"{account.name} sync {'on' if account.sync_enabled else 'off'}")


def _run_tx(service: LedgerService, args: argparse.Namespace) -> None:
    if args.action == "record":
        result = service.record(_record_request(args))
        if result.duplicate:
            print(f"Already recorded as transaction #{result.transaction_id}")
            return
        print(f"Recorded transaction #{result.transaction_id}")
        if result.realized_gain is not None:
            print(f"Realized gain: {format_decimal(result.realized_gain)} {service.cost_basis_currency}")
        if result.inferred_rate is not None:
            print(f"Inferred rate {result.inferred_rate.pair} = {format_decimal(result.inferred_rate.rate)}")
        print(render_holdings(result.holdings))
    elif args.action == "list":
        tx_filter = TransactionFilter(
            account=args.account, asset=args.asset, since=args.since, until=args.until, type=args.tx_type
        )
        print(render_transactions(service.get_transactions(tx_filter), service.journal.voided_ids()))
    else:
        void = service.void(args.transaction_id, notes=args.notes)
        print(f"Voided transaction #{args.transaction_id} (entry #{void.id})")


def _run_rate(service: LedgerService, args: argparse.Namespace) -> None:
    if args.action == "set":
        entry = service.set_exchange_rate(args.base, args.quote, args.rate, timestamp=args.at, note=args.note)
        print(f"{entry.pair} = {format_decimal(entry.rate)}")
    elif args.action == "get":
        rate = service.get_exchange_rate(args.base, args.quote, at=args.at)
        print(f"{args.base.upper()}/{args.quote.upper()} = {format_decimal(rate)}")
    else:
        print(render_rate_history(service.exchange_rate_history(args.base, args.quote)))


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = config()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    try:
        run(args, settings)
    except LedgerError as err:
        logger.debug("Command failed", exc_info=True)
        print(f"error: {err}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

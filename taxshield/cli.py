"""CLI entry point for TaxShield.

Commands:
    taxshield sync SOURCE FILE            Replace a bank feed's cached batch
    taxshield import-card FILE [--card]   Append a card statement CSV
    taxshield add-manual VENDOR AMOUNT DATE [--category] [--context]
    taxshield delete TXN_ID               Remove a transaction from the cache
    taxshield ledger                      Print the canonical ledger
    taxshield bills [list|add|pay|history] Bills, matched and recorded payments
    taxshield invoice add ...             Record an invoice
    taxshield receipts add|link|unlink|suggest
    taxshield summary [--year]            Tax-line totals and estimates
    taxshield watch                       Import card statements from the drop folder
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from datetime import date
from pathlib import Path

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure logging based on TAXSHIELD_LOG_LEVEL env var."""
    level = os.environ.get("TAXSHIELD_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from taxshield.config import Config

    config_dir = os.environ.get("TAXSHIELD_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_repo():
    """Create a Repository connected to the configured database, schema applied."""
    from taxshield.database.repository import Repository

    db_path = os.environ.get("TAXSHIELD_DB_PATH", "taxshield.db")
    repo = Repository(db_path=db_path)
    repo.apply_migrations()
    return repo


def _get_tenant() -> str:
    return os.environ.get("TAXSHIELD_TENANT", "default")


def _get_ledger():
    """Return (repo, Ledger) for the configured tenant."""
    from taxshield.engine import Ledger

    config = _get_config()
    repo = _get_repo()
    return repo, Ledger(repo, config, tenant_id=_get_tenant())


def _get_watch_dir() -> Path:
    """Get the watch directory from env or default."""
    return Path(os.environ.get("TAXSHIELD_WATCH_DIR", "import"))


def _parse_day(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


# ── Command handlers ─────────────────────────────────────


def cmd_sync(args: argparse.Namespace) -> int:
    """Load a bank-feed JSON export, replacing the source's cached batch."""
    repo, ledger = _get_ledger()
    try:
        batch = ledger.sync(args.source, args.file)
        if batch.error:
            print(f"{args.source}: sync failed ({batch.error}); cached batch kept")
            return 1
        print(f"{args.source}: cached {len(batch.transactions)} transaction(s)")
        return 0
    finally:
        repo.close()


def cmd_import_card(args: argparse.Namespace) -> int:
    """Append a card statement CSV to the card-import batch."""
    filepath = args.file.resolve()
    if not filepath.exists():
        print(f"Error: File not found: {filepath}")
        return 1

    repo, ledger = _get_ledger()
    try:
        added, duplicates, skipped = ledger.import_card(filepath, args.card)
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    finally:
        repo.close()
    print(f"{filepath.name}: {added} new, {duplicates} already imported, {skipped} skipped")
    return 0


def cmd_add_manual(args: argparse.Namespace) -> int:
    from taxshield.engine import new_manual_transaction
    from taxshield.parsers.base import InvalidRecord

    try:
        txn = new_manual_transaction(
            args.vendor, args.amount, args.date,
            category=args.category or "", context=args.context,
        )
    except InvalidRecord as e:
        print(f"Error: {e}")
        return 1

    repo, ledger = _get_ledger()
    try:
        ledger.add_manual(txn)
    finally:
        repo.close()
    print(f"Added {txn.id}: {txn.date} {txn.vendor} {txn.amount:.2f}")
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    repo, ledger = _get_ledger()
    try:
        removed_from = ledger.delete_transaction(args.txn_id)
    finally:
        repo.close()
    if not removed_from:
        print(f"Transaction not found: {args.txn_id}")
        return 1
    print(f"Deleted {args.txn_id} from {', '.join(removed_from)}")
    return 0


def cmd_ledger(args: argparse.Namespace) -> int:
    """Print the canonical, deduplicated transaction list."""
    repo, ledger = _get_ledger()
    try:
        view = ledger.view()
    finally:
        repo.close()

    result = view.merge
    if not result.transactions:
        print("No transactions.")
        return 0

    print(f"Ledger ({len(result.transactions)} transactions):")
    print("-" * 80)
    for t in result.transactions:
        mark = "*" if t.verified else " "
        print(
            f"  {t.date}  {t.amount:>10.2f} {mark} {t.vendor[:28]:<28}"
            f"  {t.category[:18]:<18}  {t.id}"
        )
    print(
        f"\n{result.duplicate_count} duplicate(s) removed,"
        f" {result.id_collision_count} id collision(s)"
    )
    for source in result.unavailable_sources:
        print(f"  warning: {source} unavailable, contributed 0 records")
    return 0


def cmd_bills(args: argparse.Namespace) -> int:
    from taxshield.bills.matcher import match_bills, overdue_bills, upcoming_bills
    from taxshield.database.models import Bill
    from taxshield.parsers.base import parse_amount

    action = getattr(args, "bills_command", None) or "list"
    repo, ledger = _get_ledger()
    try:
        if action == "add":
            bill = ledger.save_bill(Bill(
                category=args.category,
                provider=args.provider,
                amount=parse_amount(args.amount),
                due_date=date.fromisoformat(args.due_date),
                frequency=args.frequency,
            ))
            print(f"Added bill {bill.id}: {bill.provider} due {bill.due_date}")
            return 0

        if action == "pay":
            try:
                paid, upcoming, payment = ledger.mark_bill_paid(
                    args.bill_id, _parse_day(args.paid_date), args.method,
                )
            except KeyError:
                print(f"Bill not found: {args.bill_id}")
                return 1
            print(f"Marked {paid.id} paid on {paid.paid_date} ({payment.id})")
            if upcoming is not None:
                print(f"Next: {upcoming.id} due {upcoming.due_date}")
            return 0

        if action == "history":
            payments = ledger.payment_history(args.bill_id)
            if not payments:
                print("No payments recorded.")
            for p in payments:
                print(
                    f"  {p.paid_date}  {p.amount:>9.2f}  {p.bill_id:<17}"
                    f"  {p.payment_method}  {p.id}"
                )
            return 0

        today = _parse_day(getattr(args, "today", None)) or date.today()
        bills = ledger.bills()
        views = match_bills(
            bills, ledger.transactions(), today=today,
            due_soon_days=ledger.config.due_soon_days,
        )
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    finally:
        repo.close()

    if not views:
        print("No bills.")
        return 0

    for v in views:
        b = v.bill
        print(
            f"  {b.due_date}  {b.provider[:24]:<24} {b.amount:>9.2f}"
            f"  {v.status:<9} paid so far {v.total_paid_amount:>9.2f}"
            f" ({len(v.matched_transactions)} payment(s))"
        )
    overdue = overdue_bills(bills, today)
    upcoming = upcoming_bills(bills, today, ledger.config.upcoming_days)
    print(f"\n{len(overdue)} overdue, {len(upcoming)} due in the next {ledger.config.upcoming_days} days")
    return 0


def cmd_invoice(args: argparse.Namespace) -> int:
    from taxshield.database.models import Invoice
    from taxshield.parsers.base import parse_amount

    repo, ledger = _get_ledger()
    try:
        inv = repo.upsert_invoice(ledger.tenant_id, Invoice(
            invoice_number=args.number,
            client_name=args.client,
            amount=parse_amount(args.amount),
            issue_date=date.fromisoformat(args.issue_date),
            status=args.status,
        ))
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    finally:
        repo.close()
    print(f"Recorded invoice {inv.invoice_number} ({inv.status}) {inv.amount:.2f}")
    return 0


def cmd_receipts(args: argparse.Namespace) -> int:
    from taxshield.parsers.base import parse_datetime
    from taxshield.receipts.linker import ReceiptNotFound

    action = getattr(args, "receipts_command", None)
    if action is None:
        print("Usage: taxshield receipts {add,link,unlink,suggest}")
        return 1

    repo, ledger = _get_ledger()
    try:
        if action == "add":
            captured = parse_datetime(args.captured_at) if args.captured_at else None
            receipt = ledger.add_receipt(args.document_ref, captured)
            print(f"Added receipt {receipt.id} captured {receipt.captured_at:%Y-%m-%d}")
        elif action == "link":
            ledger.link_receipt(args.receipt_id, args.txn_id)
            print(f"Linked {args.receipt_id} -> {args.txn_id}")
        elif action == "unlink":
            ledger.unlink_receipt(args.receipt_id)
            print(f"Unlinked {args.receipt_id}")
        elif action == "suggest":
            try:
                suggestions = ledger.suggest_receipts(args.txn_id)
            except KeyError:
                print(f"Transaction not found: {args.txn_id}")
                return 1
            if not suggestions:
                print("No unlinked receipts.")
            for s in suggestions:
                print(
                    f"  {s.receipt.id}  {s.receipt.captured_at:%Y-%m-%d}"
                    f"  {s.day_distance:>3}d  {s.confidence}  {s.receipt.document_ref}"
                )
    except (ReceiptNotFound, ValueError) as e:
        print(f"Error: {e}")
        return 1
    finally:
        repo.close()
    return 0


def cmd_summary(args: argparse.Namespace) -> int:
    """Print per-line totals and the derived tax estimates."""
    repo, ledger = _get_ledger()
    try:
        view = ledger.view(year=args.year)
        table = ledger.config.tax_line_table()
    finally:
        repo.close()

    s = view.summary
    title = f"Tax summary {s.year}" if s.year else "Tax summary (all years)"
    print(title)
    print("=" * 52)
    for line_id, total in s.line_totals.items():
        if not total:
            continue
        rule = table.rule(line_id)
        label = f"Line {rule.line} {rule.label}" if rule else line_id
        print(f"  {label[:36]:<36} {total:>12.2f}")
    print("-" * 52)
    print(f"  {'Gross income':<36} {s.gross_income:>12.2f}")
    print(f"  {'Total expenses':<36} {s.total_expenses:>12.2f}")
    print(f"  {'Net profit':<36} {s.net_profit:>12.2f}")
    print(f"  {'Est. self-employment tax':<36} {s.estimated_self_employment_tax:>12.2f}")
    print(f"  {'Est. QBI deduction':<36} {s.estimated_qbi:>12.2f}")
    print(f"  {'Potential credits':<36} {s.potential_credits:>12.2f}")
    if s.skipped_count:
        print(f"\n{s.skipped_count} transaction(s) skipped")
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    """Start the drop-folder watcher for card statements."""
    from taxshield.watcher.observer import FileWatcher, ImportPipeline

    repo, ledger = _get_ledger()
    pipeline = ImportPipeline(ledger)
    watcher = FileWatcher(watch_dir=_get_watch_dir(), pipeline=pipeline)

    print(f"Watching {watcher.watch_dir} for card statements... (Ctrl+C to stop)")
    watcher.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping watcher...")
    finally:
        watcher.stop()
        repo.close()

    return 0


_COMMANDS = {
    "sync": cmd_sync,
    "import-card": cmd_import_card,
    "add-manual": cmd_add_manual,
    "delete": cmd_delete,
    "ledger": cmd_ledger,
    "bills": cmd_bills,
    "invoice": cmd_invoice,
    "receipts": cmd_receipts,
    "summary": cmd_summary,
    "watch": cmd_watch,
}


def main(argv: list[str] | None = None):
    from taxshield.database.models import (
        BANK_SOURCES,
        BILL_CATEGORIES,
        BILL_FREQUENCIES,
        DEFAULT_PAYMENT_METHOD,
    )

    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="taxshield",
        description="TaxShield reconciliation and tax classification engine",
    )
    subparsers = parser.add_subparsers(dest="command")

    # sync
    sync_p = subparsers.add_parser("sync", help="Replace a bank feed's cached batch")
    sync_p.add_argument("source", choices=sorted(BANK_SOURCES), help="Bank feed source")
    sync_p.add_argument("file", type=Path, help="JSON export from the feed")

    # import-card
    card_p = subparsers.add_parser("import-card", help="Import a card statement CSV")
    card_p.add_argument("file", type=Path, help="Statement CSV")
    card_p.add_argument("--card", help="Card name (default: file name)")

    # add-manual
    manual_p = subparsers.add_parser("add-manual", help="Add a manual transaction")
    manual_p.add_argument("vendor")
    manual_p.add_argument("amount")
    manual_p.add_argument("date", help="YYYY-MM-DD")
    manual_p.add_argument("--category")
    manual_p.add_argument("--context")

    # delete
    delete_p = subparsers.add_parser(
        "delete",
        help="Delete a transaction and cached records with the same vendor, date and amount",
    )
    delete_p.add_argument("txn_id")

    # ledger
    subparsers.add_parser("ledger", help="Print the canonical ledger")

    # bills
    bills_p = subparsers.add_parser("bills", help="Bills with matched payments")
    bills_p.add_argument("--today", help="Evaluate status as of YYYY-MM-DD")
    bills_sub = bills_p.add_subparsers(dest="bills_command")
    bills_sub.add_parser("list", help="List bills (default)")
    bill_add_p = bills_sub.add_parser("add", help="Add a bill")
    bill_add_p.add_argument("category", choices=BILL_CATEGORIES)
    bill_add_p.add_argument("provider")
    bill_add_p.add_argument("amount")
    bill_add_p.add_argument("due_date", help="YYYY-MM-DD")
    bill_add_p.add_argument("--frequency", choices=BILL_FREQUENCIES, default="monthly")
    bill_pay_p = bills_sub.add_parser("pay", help="Mark a bill paid")
    bill_pay_p.add_argument("bill_id")
    bill_pay_p.add_argument("--paid-date", dest="paid_date", help="YYYY-MM-DD")
    bill_pay_p.add_argument("--method", default=DEFAULT_PAYMENT_METHOD, help="Payment method")
    bill_hist_p = bills_sub.add_parser("history", help="Recorded bill payments")
    bill_hist_p.add_argument("bill_id", nargs="?", help="Limit to one bill")

    # invoice
    inv_p = subparsers.add_parser("invoice", help="Record invoices")
    inv_sub = inv_p.add_subparsers(dest="invoice_command")
    inv_add_p = inv_sub.add_parser("add", help="Add an invoice")
    inv_add_p.add_argument("number")
    inv_add_p.add_argument("client")
    inv_add_p.add_argument("amount")
    inv_add_p.add_argument("issue_date", help="YYYY-MM-DD")
    inv_add_p.add_argument("--status", default="Draft", choices=["Draft", "Sent", "Paid", "Overdue"])

    # receipts
    rec_p = subparsers.add_parser("receipts", help="Receipt vault links")
    rec_sub = rec_p.add_subparsers(dest="receipts_command")
    rec_add_p = rec_sub.add_parser("add", help="Register a receipt document")
    rec_add_p.add_argument("document_ref")
    rec_add_p.add_argument("--captured-at", dest="captured_at", help="ISO timestamp")
    rec_link_p = rec_sub.add_parser("link", help="Link a receipt to a transaction")
    rec_link_p.add_argument("receipt_id")
    rec_link_p.add_argument("txn_id")
    rec_unlink_p = rec_sub.add_parser("unlink", help="Unlink a receipt")
    rec_unlink_p.add_argument("receipt_id")
    rec_suggest_p = rec_sub.add_parser("suggest", help="Suggest receipts for a transaction")
    rec_suggest_p.add_argument("txn_id")

    # summary
    summary_p = subparsers.add_parser("summary", help="Tax-line totals and estimates")
    summary_p.add_argument("--year", type=int)

    # watch
    subparsers.add_parser("watch", help="Watch the drop folder for card statements")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.command == "invoice" and getattr(args, "invoice_command", None) is None:
        inv_p.print_help()
        sys.exit(1)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()

"""Repository: CRUD operations against SQLite using raw SQL.

Bills, receipts and invoices go in and out as dataclasses from models.py.
Cached source batches are stored as opaque JSON payloads; SourceCache owns
their encoding. Decimal amounts are stored as TEXT so they round-trip
exactly. Every row is scoped to a tenant id.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

from .models import Bill, BillPayment, Invoice, Receipt

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


@dataclass
class SourceBatchRow:
    tenant_id: str
    source: str
    payload: str
    fetched_at: str
    error: str | None = None


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path = MIGRATIONS_DIR):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "  version INTEGER PRIMARY KEY,"
            "  description TEXT,"
            "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self.conn.commit()

        row = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current = row[0] or 0

        for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
            version = int(sql_file.name.split("_")[0])
            if version > current:
                try:
                    self.conn.execute("BEGIN")
                    # executescript auto-commits, so we split statements manually
                    sql_text = sql_file.read_text()
                    for statement in sql_text.split(";"):
                        statement = statement.strip()
                        if statement:
                            self.conn.execute(statement)
                    self.conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )
                    self.conn.commit()
                except Exception:
                    self.conn.rollback()
                    raise

    # ── Source batches ──────────────────────────────────────

    def upsert_source_batch(
        self, tenant_id: str, source: str, payload: str,
        fetched_at: str, error: str | None = None,
    ):
        """Write the cached batch for (tenant, source), replacing any prior one."""
        self.conn.execute(
            "INSERT INTO source_batches (tenant_id, source, payload, fetched_at, error)"
            " VALUES (?, ?, ?, ?, ?)"
            " ON CONFLICT(tenant_id, source) DO UPDATE SET"
            "  payload = excluded.payload,"
            "  fetched_at = excluded.fetched_at,"
            "  error = excluded.error",
            (tenant_id, source, payload, fetched_at, error),
        )
        self.conn.commit()

    def get_source_batch(self, tenant_id: str, source: str) -> SourceBatchRow | None:
        row = self.conn.execute(
            "SELECT * FROM source_batches WHERE tenant_id = ? AND source = ?",
            (tenant_id, source),
        ).fetchone()
        return self._row_to_source_batch(row) if row else None

    def get_source_batches(self, tenant_id: str) -> list[SourceBatchRow]:
        rows = self.conn.execute(
            "SELECT * FROM source_batches WHERE tenant_id = ? ORDER BY source",
            (tenant_id,),
        ).fetchall()
        return [self._row_to_source_batch(r) for r in rows]

    def delete_source_batch(self, tenant_id: str, source: str) -> bool:
        cur = self.conn.execute(
            "DELETE FROM source_batches WHERE tenant_id = ? AND source = ?",
            (tenant_id, source),
        )
        self.conn.commit()
        return cur.rowcount > 0

    # ── Receipts ────────────────────────────────────────────

    def upsert_receipt(self, tenant_id: str, receipt: Receipt) -> Receipt:
        self.conn.execute(
            "INSERT INTO receipts"
            " (id, tenant_id, captured_at, document_ref, linked_transaction_id)"
            " VALUES (?,?,?,?,?)"
            " ON CONFLICT(id) DO UPDATE SET"
            "  captured_at = excluded.captured_at,"
            "  document_ref = excluded.document_ref,"
            "  linked_transaction_id = excluded.linked_transaction_id"
            " WHERE receipts.tenant_id = excluded.tenant_id",
            (receipt.id, tenant_id, receipt.captured_at.isoformat(),
             receipt.document_ref, receipt.linked_transaction_id),
        )
        self.conn.commit()
        return receipt

    def set_receipt_link(
        self, tenant_id: str, receipt_id: str, transaction_id: str | None,
    ) -> bool:
        cur = self.conn.execute(
            "UPDATE receipts SET linked_transaction_id = ?"
            " WHERE id = ? AND tenant_id = ?",
            (transaction_id, receipt_id, tenant_id),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def get_receipt(self, tenant_id: str, receipt_id: str) -> Receipt | None:
        row = self.conn.execute(
            "SELECT * FROM receipts WHERE id = ? AND tenant_id = ?",
            (receipt_id, tenant_id),
        ).fetchone()
        return self._row_to_receipt(row) if row else None

    def get_receipts(self, tenant_id: str) -> list[Receipt]:
        rows = self.conn.execute(
            "SELECT * FROM receipts WHERE tenant_id = ?"
            " ORDER BY captured_at, rowid",
            (tenant_id,),
        ).fetchall()
        return [self._row_to_receipt(r) for r in rows]

    def delete_receipt(self, tenant_id: str, receipt_id: str) -> bool:
        cur = self.conn.execute(
            "DELETE FROM receipts WHERE id = ? AND tenant_id = ?",
            (receipt_id, tenant_id),
        )
        self.conn.commit()
        return cur.rowcount > 0

    # ── Bills ───────────────────────────────────────────────

    def upsert_bill(self, tenant_id: str, bill: Bill) -> Bill:
        self.conn.execute(
            "INSERT INTO bills"
            " (id, tenant_id, category, provider, amount, due_date,"
            "  frequency, is_paid, paid_date, notes)"
            " VALUES (?,?,?,?,?,?,?,?,?,?)"
            " ON CONFLICT(id) DO UPDATE SET"
            "  category = excluded.category,"
            "  provider = excluded.provider,"
            "  amount = excluded.amount,"
            "  due_date = excluded.due_date,"
            "  frequency = excluded.frequency,"
            "  is_paid = excluded.is_paid,"
            "  paid_date = excluded.paid_date,"
            "  notes = excluded.notes"
            " WHERE bills.tenant_id = excluded.tenant_id",
            (bill.id, tenant_id, bill.category, bill.provider, str(bill.amount),
             bill.due_date.isoformat(), bill.frequency, int(bill.is_paid),
             bill.paid_date.isoformat() if bill.paid_date else None,
             bill.notes),
        )
        self.conn.commit()
        return bill

    def get_bill(self, tenant_id: str, bill_id: str) -> Bill | None:
        row = self.conn.execute(
            "SELECT * FROM bills WHERE id = ? AND tenant_id = ?",
            (bill_id, tenant_id),
        ).fetchone()
        return self._row_to_bill(row) if row else None

    def get_bills(self, tenant_id: str) -> list[Bill]:
        rows = self.conn.execute(
            "SELECT * FROM bills WHERE tenant_id = ? ORDER BY due_date, rowid",
            (tenant_id,),
        ).fetchall()
        return [self._row_to_bill(r) for r in rows]

    def delete_bill(self, tenant_id: str, bill_id: str) -> bool:
        cur = self.conn.execute(
            "DELETE FROM bills WHERE id = ? AND tenant_id = ?",
            (bill_id, tenant_id),
        )
        self.conn.commit()
        return cur.rowcount > 0

    # ── Bill payments ───────────────────────────────────────

    def insert_bill_payment(self, tenant_id: str, payment: BillPayment) -> BillPayment:
        self.conn.execute(
            "INSERT INTO bill_payments"
            " (id, tenant_id, bill_id, amount, paid_date, payment_method,"
            "  confirmation_number, notes)"
            " VALUES (?,?,?,?,?,?,?,?)",
            (payment.id, tenant_id, payment.bill_id, str(payment.amount),
             payment.paid_date.isoformat(), payment.payment_method,
             payment.confirmation_number, payment.notes),
        )
        self.conn.commit()
        return payment

    def get_bill_payments(
        self, tenant_id: str, bill_id: str | None = None,
    ) -> list[BillPayment]:
        """Recorded payments, newest paid_date first."""
        sql = "SELECT * FROM bill_payments WHERE tenant_id = ?"
        params: list = [tenant_id]
        if bill_id is not None:
            sql += " AND bill_id = ?"
            params.append(bill_id)
        sql += " ORDER BY paid_date DESC, rowid DESC"
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_bill_payment(r) for r in rows]

    # ── Invoices ────────────────────────────────────────────

    def upsert_invoice(self, tenant_id: str, inv: Invoice) -> Invoice:
        self.conn.execute(
            "INSERT INTO invoices"
            " (id, tenant_id, invoice_number, client_name, issue_date,"
            "  due_date, amount, status, description)"
            " VALUES (?,?,?,?,?,?,?,?,?)"
            " ON CONFLICT(id) DO UPDATE SET"
            "  invoice_number = excluded.invoice_number,"
            "  client_name = excluded.client_name,"
            "  issue_date = excluded.issue_date,"
            "  due_date = excluded.due_date,"
            "  amount = excluded.amount,"
            "  status = excluded.status,"
            "  description = excluded.description"
            " WHERE invoices.tenant_id = excluded.tenant_id",
            (inv.id, tenant_id, inv.invoice_number, inv.client_name,
             inv.issue_date.isoformat(),
             inv.due_date.isoformat() if inv.due_date else None,
             str(inv.amount), inv.status, inv.description),
        )
        self.conn.commit()
        return inv

    def get_invoices(self, tenant_id: str) -> list[Invoice]:
        rows = self.conn.execute(
            "SELECT * FROM invoices WHERE tenant_id = ? ORDER BY issue_date, rowid",
            (tenant_id,),
        ).fetchall()
        return [self._row_to_invoice(r) for r in rows]

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_source_batch(row: sqlite3.Row) -> SourceBatchRow:
        return SourceBatchRow(
            tenant_id=row["tenant_id"], source=row["source"],
            payload=row["payload"], fetched_at=row["fetched_at"],
            error=row["error"],
        )

    @staticmethod
    def _row_to_receipt(row: sqlite3.Row) -> Receipt:
        return Receipt(
            id=row["id"],
            captured_at=datetime.fromisoformat(row["captured_at"]),
            document_ref=row["document_ref"],
            linked_transaction_id=row["linked_transaction_id"],
        )

    @staticmethod
    def _row_to_bill(row: sqlite3.Row) -> Bill:
        return Bill(
            id=row["id"], category=row["category"],
            provider=row["provider"], amount=Decimal(row["amount"]),
            due_date=date.fromisoformat(row["due_date"]),
            frequency=row["frequency"], is_paid=bool(row["is_paid"]),
            paid_date=(
                date.fromisoformat(row["paid_date"]) if row["paid_date"] else None
            ),
            notes=row["notes"],
        )

    @staticmethod
    def _row_to_bill_payment(row: sqlite3.Row) -> BillPayment:
        return BillPayment(
            id=row["id"], bill_id=row["bill_id"],
            amount=Decimal(row["amount"]),
            paid_date=date.fromisoformat(row["paid_date"]),
            payment_method=row["payment_method"],
            confirmation_number=row["confirmation_number"],
            notes=row["notes"],
        )

    @staticmethod
    def _row_to_invoice(row: sqlite3.Row) -> Invoice:
        return Invoice(
            id=row["id"], invoice_number=row["invoice_number"],
            client_name=row["client_name"],
            issue_date=date.fromisoformat(row["issue_date"]),
            due_date=(
                date.fromisoformat(row["due_date"]) if row["due_date"] else None
            ),
            amount=Decimal(row["amount"]), status=row["status"],
            description=row["description"],
        )

from __future__ import annotations

from ..extensions import db
from ..money import percentage
from ..time_utils import to_utc_z

# Ledger kinds
KIND_CREDIT = "CREDIT"
KIND_KICKBACK = "KICKBACK"
LEDGER_KINDS = (KIND_CREDIT, KIND_KICKBACK)

# Account status
ACCOUNT_ACTIVE = "ACTIVE"
ACCOUNT_SUSPENDED = "SUSPENDED"
ACCOUNT_BLOCKED = "BLOCKED"
ACCOUNT_PENDING_REVIEW = "PENDING_REVIEW"
ACCOUNT_STATUSES = (ACCOUNT_ACTIVE, ACCOUNT_SUSPENDED, ACCOUNT_BLOCKED, ACCOUNT_PENDING_REVIEW)

# Transaction types
TX_CREDIT_INCREASE = "CREDIT_INCREASE"
TX_CREDIT_DECREASE = "CREDIT_DECREASE"
TX_PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
TX_ORDER_PLACED = "ORDER_PLACED"
TX_REFUND = "REFUND"
TX_ADJUSTMENT = "ADJUSTMENT"
TRANSACTION_TYPES = (
    TX_CREDIT_INCREASE,
    TX_CREDIT_DECREASE,
    TX_PAYMENT_RECEIVED,
    TX_ORDER_PLACED,
    TX_REFUND,
    TX_ADJUSTMENT,
)


class LedgerAccount(db.Model):
    """
    Balance account of one retailer in one ledger (credit line or kickback allowance).

    One account per (retailer_id, kind): UniqueConstraint("retailer_id", "kind").

    BALANCE INVARIANTS (integer cents):
    - available_cents == limit_cents - used_cents
    - 0 <= outstanding_cents <= used_cents   (outstanding stays 0 on KICKBACK)
    - no balance field is ever negative

    The balance fields are authoritative. LedgerTransaction rows are the audit
    trail and are appended in the same DB transaction as the balance change.

    CONCURRENCY: version_id_col makes a concurrent writer's flush fail with
    StaleDataError; ledger_service retries the whole operation.
    """
    __tablename__ = "ledger_accounts"
    __table_args__ = (
        db.UniqueConstraint("retailer_id", "kind", name="uq_ledger_accounts_retailer_kind"),
        db.Index("ix_ledger_accounts_kind_status", "kind", "status"),
        db.CheckConstraint("limit_cents >= 0", name="ck_ledger_accounts_limit_nonneg"),
        db.CheckConstraint("used_cents >= 0", name="ck_ledger_accounts_used_nonneg"),
        db.CheckConstraint("available_cents >= 0", name="ck_ledger_accounts_available_nonneg"),
        db.CheckConstraint("outstanding_cents >= 0", name="ck_ledger_accounts_outstanding_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    retailer_id = db.Column(db.String(64), nullable=False, index=True)
    kind = db.Column(db.String(16), nullable=False)

    limit_cents = db.Column(db.Integer, nullable=False, default=0)
    used_cents = db.Column(db.Integer, nullable=False, default=0)
    available_cents = db.Column(db.Integer, nullable=False, default=0)
    outstanding_cents = db.Column(db.Integer, nullable=False, default=0)

    # Credit terms (unused on KICKBACK accounts)
    payment_terms_days = db.Column(db.Integer, nullable=False, default=30)
    last_payment_at = db.Column(db.DateTime(timezone=True), nullable=True)
    next_due_at = db.Column(db.DateTime(timezone=True), nullable=True)

    low_balance_threshold_cents = db.Column(db.Integer, nullable=True)
    send_low_balance_alert = db.Column(db.Boolean, nullable=False, default=True)

    status = db.Column(db.String(16), nullable=False, default=ACCOUNT_ACTIVE)
    notes = db.Column(db.Text, nullable=True)

    # Next LedgerTransaction.sequence for this account
    next_sequence = db.Column(db.Integer, nullable=False, default=1)

    created_by = db.Column(db.String(64), nullable=True)
    last_modified_by = db.Column(db.String(64), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    transactions = db.relationship(
        "LedgerTransaction",
        back_populates="account",
        order_by="LedgerTransaction.sequence",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<LedgerAccount {self.kind} retailer={self.retailer_id!r} "
            f"limit={self.limit_cents} used={self.used_cents} available={self.available_cents}>"
        )

    @property
    def usage_percentage(self):
        return percentage(self.used_cents, self.limit_cents)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "retailer_id": self.retailer_id,
            "kind": self.kind,
            "limit_cents": self.limit_cents,
            "used_cents": self.used_cents,
            "available_cents": self.available_cents,
            "outstanding_cents": self.outstanding_cents,
            "usage_percentage": str(self.usage_percentage),
            "payment_terms_days": self.payment_terms_days,
            "last_payment_at": to_utc_z(self.last_payment_at),
            "next_due_at": to_utc_z(self.next_due_at),
            "low_balance_threshold_cents": self.low_balance_threshold_cents,
            "send_low_balance_alert": self.send_low_balance_alert,
            "status": self.status,
            "notes": self.notes,
            "created_by": self.created_by,
            "last_modified_by": self.last_modified_by,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class LedgerTransaction(db.Model):
    """
    Append-only audit entry of a ledger account.

    TRANSACTION TYPES:
    - CREDIT_INCREASE / CREDIT_DECREASE: limit change, amount = |delta|
    - ORDER_PLACED: debit for a sale
    - PAYMENT_RECEIVED: retailer settled part of the outstanding amount (credit only)
    - REFUND: reversal of a prior debit
    - ADJUSTMENT: status change or usage reset, usually amount 0

    balance_after_cents is the account's available_cents right after the change.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "ledger_transactions"
    __table_args__ = (
        db.UniqueConstraint("account_id", "sequence", name="uq_ledger_transactions_account_sequence"),
        db.UniqueConstraint("transaction_ref", name="uq_ledger_transactions_ref"),
        db.Index("ix_ledger_transactions_order", "order_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("ledger_accounts.id"), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)
    transaction_ref = db.Column(db.String(40), nullable=False)

    transaction_type = db.Column(db.String(24), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    balance_after_cents = db.Column(db.Integer, nullable=False)

    description = db.Column(db.String(255), nullable=True)
    order_id = db.Column(db.String(64), nullable=True)
    processed_by = db.Column(db.String(64), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    account = db.relationship("LedgerAccount", back_populates="transactions")

    def to_dict(self) -> dict:
        return {
            "transaction_ref": self.transaction_ref,
            "sequence": self.sequence,
            "transaction_type": self.transaction_type,
            "amount_cents": self.amount_cents,
            "balance_after_cents": self.balance_after_cents,
            "description": self.description,
            "order_id": self.order_id,
            "processed_by": self.processed_by,
            "occurred_at": to_utc_z(self.occurred_at),
        }

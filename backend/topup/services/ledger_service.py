# Overview: Service-layer operations for retailer balance ledgers (credit line and kickback allowance).

from __future__ import annotations

import uuid
from datetime import datetime

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..exceptions import (
    AccountExists,
    AccountNotFound,
    InsufficientBalance,
    InvalidState,
    ValidationError,
)
from ..extensions import db
from ..models.ledger import (
    ACCOUNT_ACTIVE,
    ACCOUNT_STATUSES,
    ACCOUNT_SUSPENDED,
    KIND_CREDIT,
    KIND_KICKBACK,
    LEDGER_KINDS,
    TX_ADJUSTMENT,
    TX_CREDIT_DECREASE,
    TX_CREDIT_INCREASE,
    TX_ORDER_PLACED,
    TX_PAYMENT_RECEIVED,
    TX_REFUND,
    LedgerAccount,
    LedgerTransaction,
)
from ..money import percentage, require_cents
from ..time_utils import days_after, utcnow
from .concurrency import commit_or_timeout, deadline_after, lock_for_update, run_with_retry

"""
Ledger Invariants (authoritative)

- One account per (retailer_id, kind). Credit and kickback share this service;
  only receive_payment (credit) and reset_usage (kickback) are kind-specific.
- available == limit - used after every operation; outstanding <= used.
- No balance field ever goes negative: debits beyond available are rejected,
  limit decreases below used are rejected, payments and refunds floor at zero.
- Every successful balance or status mutation appends exactly one
  LedgerTransaction in the same DB transaction. Settings edits append nothing.
- A rejected operation leaves the account and its history untouched.
- Per-account linearizability: the account row is versioned (version_id_col);
  a concurrent writer's flush fails and run_with_retry repeats the whole
  read-check-mutate-append.
"""

SETTINGS_FIELDS = {
    "payment_terms_days",
    "low_balance_threshold_cents",
    "send_low_balance_alert",
    "notes",
}

MIN_PAYMENT_TERMS_DAYS = 1
MAX_PAYMENT_TERMS_DAYS = 365


# =============================================================================
# HELPERS
# =============================================================================

def normalize_kind(kind: str) -> str:
    value = (kind or "").strip().upper()
    if value not in LEDGER_KINDS:
        raise ValidationError(f"kind must be one of {list(LEDGER_KINDS)}")
    return value


def _require_retailer(retailer_id) -> str:
    value = "" if retailer_id is None else str(retailer_id).strip()
    if not value:
        raise ValidationError("retailer_id is required")
    if len(value) > 64:
        raise ValidationError("retailer_id exceeds max length 64")
    return value


def _require_terms(days) -> int:
    if isinstance(days, bool) or not isinstance(days, int):
        raise ValidationError("payment_terms_days must be an integer")
    if not MIN_PAYMENT_TERMS_DAYS <= days <= MAX_PAYMENT_TERMS_DAYS:
        raise ValidationError(
            f"payment_terms_days must be between {MIN_PAYMENT_TERMS_DAYS} and {MAX_PAYMENT_TERMS_DAYS}"
        )
    return days


def _load_account(kind: str, retailer_id: str, *, lock: bool = False) -> LedgerAccount:
    query = db.session.query(LedgerAccount).filter_by(kind=kind, retailer_id=retailer_id)
    if lock:
        query = lock_for_update(query)
    account = query.first()
    if account is None:
        raise AccountNotFound(kind, retailer_id)
    return account


def _new_reference() -> str:
    return f"TXN-{uuid.uuid4().hex.upper()}"


def _append(
    account: LedgerAccount,
    transaction_type: str,
    amount_cents: int,
    *,
    description: str | None = None,
    order_id: str | None = None,
    processed_by: str | None = None,
) -> LedgerTransaction:
    """Append one history row. Caller has already applied the balance change."""
    sequence = account.next_sequence
    account.next_sequence = sequence + 1
    tx = LedgerTransaction(
        account_id=account.id,
        sequence=sequence,
        transaction_ref=_new_reference(),
        transaction_type=transaction_type,
        amount_cents=amount_cents,
        balance_after_cents=account.available_cents,
        description=description[:255] if description else None,
        order_id=order_id,
        processed_by=processed_by,
        occurred_at=utcnow(),
    )
    db.session.add(tx)
    return tx


def _mutate(kind: str, retailer_id: str, apply, *, timeout: float | None = None) -> LedgerTransaction:
    """
    Locked read-check-mutate-append for one account, retried as a whole on
    version conflicts. `apply(account)` raises to reject or returns the new
    LedgerTransaction.
    """
    kind = normalize_kind(kind)
    retailer_id = _require_retailer(retailer_id)
    deadline = deadline_after(timeout)

    def _op():
        account = _load_account(kind, retailer_id, lock=True)
        tx = apply(account)
        commit_or_timeout(deadline)
        return tx

    return run_with_retry(_op, deadline=deadline)


def _check_low_balance(account: LedgerAccount) -> None:
    threshold = account.low_balance_threshold_cents
    if threshold is None or not account.send_low_balance_alert:
        return
    if account.available_cents <= threshold:
        current_app.logger.warning(
            "Low %s balance for retailer %s: available %s <= threshold %s",
            account.kind.lower(), account.retailer_id, account.available_cents, threshold,
        )


# =============================================================================
# READS
# =============================================================================

def get_account(kind: str, retailer_id: str) -> LedgerAccount:
    return _load_account(normalize_kind(kind), _require_retailer(retailer_id))


def list_accounts(kind: str, status: str | None = None) -> list[LedgerAccount]:
    query = db.session.query(LedgerAccount).filter(LedgerAccount.kind == normalize_kind(kind))
    if status is not None:
        query = query.filter(LedgerAccount.status == status)
    return query.order_by(LedgerAccount.retailer_id).all()


def history(kind: str, retailer_id: str) -> list[LedgerTransaction]:
    """Full transaction log of one account in insertion order."""
    account = get_account(kind, retailer_id)
    return (
        db.session.query(LedgerTransaction)
        .filter(LedgerTransaction.account_id == account.id)
        .order_by(LedgerTransaction.sequence)
        .all()
    )


def has_sufficient_balance(kind: str, retailer_id: str, amount_cents: int) -> bool:
    """Advisory pre-check only; debit() re-checks under lock."""
    require_cents(amount_cents)
    try:
        account = get_account(kind, retailer_id)
    except AccountNotFound:
        return False
    return account.status == ACCOUNT_ACTIVE and account.available_cents >= amount_cents


def usage_percentage(kind: str, retailer_id: str):
    return get_account(kind, retailer_id).usage_percentage


# =============================================================================
# MUTATIONS
# =============================================================================

def open_account(
    kind: str,
    retailer_id: str,
    initial_limit_cents: int,
    *,
    operator_id: str | None = None,
    payment_terms_days: int | None = None,
    low_balance_threshold_cents: int | None = None,
    notes: str | None = None,
    timeout: float | None = None,
) -> LedgerAccount:
    """
    Create the account on its first limit assignment.

    The initial limit is recorded as a CREDIT_INCREASE so the history starts
    with how the balance came to be.

    Raises:
        AccountExists: the retailer already has an account of this kind
    """
    kind = normalize_kind(kind)
    retailer_id = _require_retailer(retailer_id)
    require_cents(initial_limit_cents, "initial_limit_cents")
    if payment_terms_days is None:
        payment_terms_days = current_app.config.get("DEFAULT_PAYMENT_TERMS_DAYS", 30)
    _require_terms(payment_terms_days)
    if low_balance_threshold_cents is not None:
        require_cents(low_balance_threshold_cents, "low_balance_threshold_cents")
    deadline = deadline_after(timeout)

    def _op():
        exists = db.session.query(LedgerAccount.id).filter_by(kind=kind, retailer_id=retailer_id).first()
        if exists is not None:
            raise AccountExists(kind, retailer_id)

        account = LedgerAccount(
            retailer_id=retailer_id,
            kind=kind,
            limit_cents=initial_limit_cents,
            used_cents=0,
            available_cents=initial_limit_cents,
            outstanding_cents=0,
            payment_terms_days=payment_terms_days,
            low_balance_threshold_cents=low_balance_threshold_cents,
            status=ACCOUNT_ACTIVE,
            notes=notes,
            next_sequence=1,
            created_by=operator_id,
            last_modified_by=operator_id,
        )
        db.session.add(account)
        try:
            db.session.flush()
        except IntegrityError as exc:
            db.session.rollback()
            raise AccountExists(kind, retailer_id) from exc

        _append(
            account, TX_CREDIT_INCREASE, initial_limit_cents,
            description="Initial limit", processed_by=operator_id,
        )
        commit_or_timeout(deadline)
        return account

    account = run_with_retry(_op, deadline=deadline)
    current_app.logger.info(
        "Opened %s account for retailer %s with limit %s", kind.lower(), retailer_id, initial_limit_cents
    )
    return account


def adjust_limit(
    kind: str,
    retailer_id: str,
    new_limit_cents: int,
    *,
    operator_id: str | None = None,
    reason: str | None = None,
    timeout: float | None = None,
) -> LedgerTransaction:
    """
    Set a new limit; available follows as new_limit - used.

    A decrease below what is already used is rejected (InvalidState) rather
    than producing a negative available balance.
    """
    require_cents(new_limit_cents, "new_limit_cents")

    def _apply(account: LedgerAccount) -> LedgerTransaction:
        if new_limit_cents < account.used_cents:
            raise InvalidState(
                f"New limit {new_limit_cents} is below the amount already used ({account.used_cents})",
                details={"new_limit_cents": new_limit_cents, "used_cents": account.used_cents},
            )
        delta = new_limit_cents - account.limit_cents
        if delta > 0:
            tx_type = TX_CREDIT_INCREASE
        elif delta < 0:
            tx_type = TX_CREDIT_DECREASE
        else:
            tx_type = TX_ADJUSTMENT

        account.limit_cents = new_limit_cents
        account.available_cents = new_limit_cents - account.used_cents
        account.last_modified_by = operator_id
        description = reason or f"Limit changed to {new_limit_cents}"
        return _append(account, tx_type, abs(delta), description=description, processed_by=operator_id)

    tx = _mutate(kind, retailer_id, _apply, timeout=timeout)
    current_app.logger.info(
        "%s limit of retailer %s set to %s by %s",
        tx.account.kind.capitalize(), tx.account.retailer_id, new_limit_cents, operator_id or "system",
    )
    return tx


def debit(
    kind: str,
    retailer_id: str,
    amount_cents: int,
    *,
    order_id: str | None = None,
    description: str | None = None,
    processed_by: str | None = None,
    timeout: float | None = None,
) -> LedgerTransaction:
    """
    Charge a sale against the account.

    Raises:
        InsufficientBalance: amount > available (nothing is written)
        InvalidState: account is not ACTIVE
    """
    require_cents(amount_cents, positive=True)

    def _apply(account: LedgerAccount) -> LedgerTransaction:
        if account.status != ACCOUNT_ACTIVE:
            raise InvalidState(
                f"{account.kind.capitalize()} account of retailer {account.retailer_id} is {account.status}",
                details={"status": account.status},
            )
        if amount_cents > account.available_cents:
            raise InsufficientBalance(account.kind, account.retailer_id, amount_cents, account.available_cents)

        account.used_cents += amount_cents
        account.available_cents -= amount_cents
        if account.kind == KIND_CREDIT:
            account.outstanding_cents += amount_cents
            if account.next_due_at is None:
                account.next_due_at = days_after(utcnow(), account.payment_terms_days)
        if description is None and order_id:
            note = f"Order {order_id}"
        else:
            note = description
        return _append(
            account, TX_ORDER_PLACED, amount_cents,
            description=note,
            order_id=order_id,
            processed_by=processed_by,
        )

    tx = _mutate(kind, retailer_id, _apply, timeout=timeout)
    account = tx.account
    current_app.logger.info(
        "Debited %s from %s account of retailer %s (order %s), available %s",
        amount_cents, account.kind.lower(), account.retailer_id, order_id, account.available_cents,
    )
    _check_low_balance(account)
    return tx


def receive_payment(
    kind: str,
    retailer_id: str,
    amount_cents: int,
    *,
    operator_id: str | None = None,
    description: str | None = None,
    timeout: float | None = None,
) -> LedgerTransaction:
    """
    Retailer settles part of the credit line.

    outstanding and used both drop by the amount (floored at zero); the due
    date restarts from today while anything is still outstanding.
    """
    if normalize_kind(kind) != KIND_CREDIT:
        raise InvalidState("Payments can only be received on credit accounts")
    require_cents(amount_cents, positive=True)

    def _apply(account: LedgerAccount) -> LedgerTransaction:
        now = utcnow()
        account.outstanding_cents = max(0, account.outstanding_cents - amount_cents)
        account.used_cents = max(0, account.used_cents - amount_cents)
        account.available_cents = account.limit_cents - account.used_cents
        account.last_payment_at = now
        if account.outstanding_cents > 0:
            account.next_due_at = days_after(now, account.payment_terms_days)
        else:
            account.next_due_at = None
        account.last_modified_by = operator_id
        return _append(
            account, TX_PAYMENT_RECEIVED, amount_cents,
            description=description or "Payment received", processed_by=operator_id,
        )

    tx = _mutate(kind, retailer_id, _apply, timeout=timeout)
    current_app.logger.info(
        "Payment of %s received from retailer %s, outstanding %s",
        amount_cents, tx.account.retailer_id, tx.account.outstanding_cents,
    )
    return tx


def refund(
    kind: str,
    retailer_id: str,
    amount_cents: int,
    *,
    order_id: str | None = None,
    operator_id: str | None = None,
    description: str | None = None,
    timeout: float | None = None,
) -> LedgerTransaction:
    """Reverse (part of) a prior debit: used and outstanding floor at zero."""
    require_cents(amount_cents, positive=True)

    def _apply(account: LedgerAccount) -> LedgerTransaction:
        account.used_cents = max(0, account.used_cents - amount_cents)
        account.outstanding_cents = min(
            max(0, account.outstanding_cents - amount_cents), account.used_cents
        )
        account.available_cents = account.limit_cents - account.used_cents
        if account.outstanding_cents == 0:
            account.next_due_at = None
        account.last_modified_by = operator_id
        return _append(
            account, TX_REFUND, amount_cents,
            description=description or "Refund", order_id=order_id, processed_by=operator_id,
        )

    tx = _mutate(kind, retailer_id, _apply, timeout=timeout)
    current_app.logger.info(
        "Refunded %s to %s account of retailer %s (order %s)",
        amount_cents, tx.account.kind.lower(), tx.account.retailer_id, order_id,
    )
    return tx


def set_status(
    kind: str,
    retailer_id: str,
    status: str,
    *,
    operator_id: str | None = None,
    reason: str | None = None,
    timeout: float | None = None,
) -> LedgerTransaction:
    """Status change; no balance effect, recorded as an ADJUSTMENT of 0."""
    if status not in ACCOUNT_STATUSES:
        raise ValidationError(f"status must be one of {list(ACCOUNT_STATUSES)}")

    def _apply(account: LedgerAccount) -> LedgerTransaction:
        previous = account.status
        account.status = status
        account.last_modified_by = operator_id
        description = f"Status changed from {previous} to {status}"
        if reason:
            description = f"{description}: {reason}"
        return _append(account, TX_ADJUSTMENT, 0, description=description, processed_by=operator_id)

    tx = _mutate(kind, retailer_id, _apply, timeout=timeout)
    current_app.logger.info(
        "%s account of retailer %s is now %s (%s)",
        tx.account.kind.capitalize(), tx.account.retailer_id, status, reason or "no reason given",
    )
    return tx


def reset_usage(
    kind: str,
    retailer_id: str,
    *,
    operator_id: str | None = None,
    reason: str | None = None,
    timeout: float | None = None,
) -> LedgerTransaction:
    """Start a new kickback period: used back to zero, available back to the limit."""
    if normalize_kind(kind) != KIND_KICKBACK:
        raise InvalidState("Usage reset is only defined for kickback accounts")

    def _apply(account: LedgerAccount) -> LedgerTransaction:
        released = account.used_cents
        account.used_cents = 0
        account.outstanding_cents = 0
        account.available_cents = account.limit_cents
        account.last_modified_by = operator_id
        return _append(
            account, TX_ADJUSTMENT, released,
            description=reason or "Kickback period reset", processed_by=operator_id,
        )

    tx = _mutate(kind, retailer_id, _apply, timeout=timeout)
    current_app.logger.info("Kickback usage of retailer %s reset", tx.account.retailer_id)
    return tx


def update_settings(
    kind: str,
    retailer_id: str,
    changes: dict,
    *,
    operator_id: str | None = None,
    timeout: float | None = None,
) -> LedgerAccount:
    """Edit payment terms, low-balance alerting or notes. Balances are not touched."""
    if not isinstance(changes, dict) or not changes:
        raise ValidationError("No settings supplied")
    unknown = set(changes) - SETTINGS_FIELDS
    if unknown:
        raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
    if "payment_terms_days" in changes:
        _require_terms(changes["payment_terms_days"])
    if changes.get("low_balance_threshold_cents") is not None:
        require_cents(changes["low_balance_threshold_cents"], "low_balance_threshold_cents")
    if "send_low_balance_alert" in changes and not isinstance(changes["send_low_balance_alert"], bool):
        raise ValidationError("send_low_balance_alert must be a boolean")

    kind = normalize_kind(kind)
    retailer_id = _require_retailer(retailer_id)
    deadline = deadline_after(timeout)

    def _op():
        account = _load_account(kind, retailer_id, lock=True)
        for key, value in changes.items():
            setattr(account, key, value)
        account.last_modified_by = operator_id
        commit_or_timeout(deadline)
        return account

    return run_with_retry(_op, deadline=deadline)


# =============================================================================
# MONITORING
# =============================================================================

def overdue_accounts(as_of: datetime | None = None) -> list[LedgerAccount]:
    """Credit accounts with money outstanding past their due date."""
    as_of = as_of or utcnow()
    return (
        db.session.query(LedgerAccount)
        .filter(
            LedgerAccount.kind == KIND_CREDIT,
            LedgerAccount.outstanding_cents > 0,
            LedgerAccount.next_due_at.isnot(None),
            LedgerAccount.next_due_at < as_of,
        )
        .order_by(LedgerAccount.next_due_at, LedgerAccount.id)
        .all()
    )


def suspend_overdue(
    as_of: datetime | None = None,
    grace_days: int | None = None,
    *,
    operator_id: str | None = None,
) -> list[LedgerAccount]:
    """
    Suspend ACTIVE credit accounts that have been overdue for more than
    `grace_days`. Returns the accounts that were suspended.
    """
    as_of = as_of or utcnow()
    if grace_days is None:
        grace_days = current_app.config.get("OVERDUE_GRACE_DAYS", 30)

    suspended = []
    for account in overdue_accounts(as_of):
        if account.status != ACCOUNT_ACTIVE:
            continue
        if days_after(account.next_due_at, grace_days) > as_of:
            continue
        tx = set_status(
            KIND_CREDIT, account.retailer_id, ACCOUNT_SUSPENDED,
            operator_id=operator_id or "system",
            reason=f"Overdue for more than {grace_days} days",
        )
        current_app.logger.warning(
            "Suspended credit account of retailer %s: %s outstanding since %s",
            account.retailer_id, tx.account.outstanding_cents, tx.account.next_due_at,
        )
        suspended.append(tx.account)
    return suspended


def low_balance_accounts(kind: str) -> list[LedgerAccount]:
    return (
        db.session.query(LedgerAccount)
        .filter(
            LedgerAccount.kind == normalize_kind(kind),
            LedgerAccount.status == ACCOUNT_ACTIVE,
            LedgerAccount.low_balance_threshold_cents.isnot(None),
            LedgerAccount.available_cents <= LedgerAccount.low_balance_threshold_cents,
        )
        .order_by(LedgerAccount.available_cents, LedgerAccount.retailer_id)
        .all()
    )


def ledger_statistics(kind: str) -> dict:
    kind = normalize_kind(kind)
    totals = (
        db.session.query(
            func.count(LedgerAccount.id),
            func.coalesce(func.sum(LedgerAccount.limit_cents), 0),
            func.coalesce(func.sum(LedgerAccount.used_cents), 0),
            func.coalesce(func.sum(LedgerAccount.available_cents), 0),
            func.coalesce(func.sum(LedgerAccount.outstanding_cents), 0),
        )
        .filter(LedgerAccount.kind == kind)
        .one()
    )
    by_status = dict(
        db.session.query(LedgerAccount.status, func.count(LedgerAccount.id))
        .filter(LedgerAccount.kind == kind)
        .group_by(LedgerAccount.status)
        .all()
    )
    count, limit_total, used_total, available_total, outstanding_total = totals
    stats = {
        "kind": kind,
        "accounts": int(count),
        "by_status": {status: int(by_status.get(status, 0)) for status in ACCOUNT_STATUSES},
        "total_limit_cents": int(limit_total),
        "total_used_cents": int(used_total),
        "total_available_cents": int(available_total),
        "total_outstanding_cents": int(outstanding_total),
        "usage_percentage": str(percentage(int(used_total), int(limit_total))),
        "low_balance_accounts": len(low_balance_accounts(kind)),
    }
    if kind == KIND_CREDIT:
        stats["overdue_accounts"] = len(overdue_accounts())
    return stats

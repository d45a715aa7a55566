"""Pure state rules for documents and commissions.

Nothing here touches the database; routers load records, call these helpers
and persist whatever they return in a single commit.
"""
from typing import Iterable, Sequence

TERMINAL_DOCUMENT_STATUSES = ("completed", "declined")


def derive_document_status(signer_statuses: Sequence[str], current: str) -> str:
    """Overall document status from the statuses of its signers.

    ``current`` is only kept while no signer has acted yet (``draft`` before
    the document is sent, ``pending`` after). An empty roster never counts as
    fully signed.
    """
    if any(s == "declined" for s in signer_statuses):
        return "declined"
    if signer_statuses and all(s == "signed" for s in signer_statuses):
        return "completed"
    if any(s == "signed" for s in signer_statuses):
        return "partially_signed"
    return current


def is_terminal(document_status: str) -> bool:
    return document_status in TERMINAL_DOCUMENT_STATUSES


def commission_amount(loan_amount: float, rate: float) -> float:
    return (loan_amount * rate) / 100


def running_total_delta(old_status: str, new_status: str, amount: float) -> float:
    """Change to a referrer's paid running total for one status move."""
    if old_status != "paid" and new_status == "paid":
        return amount
    if old_status == "paid" and new_status != "paid":
        return -amount
    return 0.0


def commission_totals(rows: Iterable) -> dict:
    totals = {"total": 0.0, "pending": 0.0, "approved": 0.0, "paid": 0.0}
    for row in rows:
        totals["total"] += row.amount
        if row.status in ("pending", "approved", "paid"):
            totals[row.status] += row.amount
    return totals

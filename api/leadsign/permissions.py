"""Capability table and relationship checks.

Writable fields are declared once per (entity, role) here and every update
route filters its patch through :func:`writable_patch`; keys outside the
allow-list are dropped silently.
"""
from typing import Dict, FrozenSet

from .models import Commission, Document, Lead, User

_LEAD_FIELDS = frozenset({
    "name", "email", "phone", "company", "loan_amount", "loan_type",
    "status", "assigned_to_id", "expected_close_date", "source",
})

WRITABLE_FIELDS: Dict[str, Dict[str, FrozenSet[str]]] = {
    # referrers and plain users still need the relationship checks below
    "lead": {"admin": _LEAD_FIELDS, "referrer": _LEAD_FIELDS, "user": _LEAD_FIELDS},
    "user": {
        "admin": frozenset({"name", "email", "role", "commission_rate", "active"}),
        "self": frozenset({"name", "email"}),
    },
    "commission": {"admin": frozenset({"status", "notes", "loan_amount", "rate"})},
}


def writable_fields(entity: str, role: str) -> FrozenSet[str]:
    return WRITABLE_FIELDS.get(entity, {}).get(role, frozenset())


def writable_patch(entity: str, role: str, patch: dict) -> dict:
    allowed = writable_fields(entity, role)
    return {key: value for key, value in patch.items() if key in allowed}


def is_admin(actor: User) -> bool:
    return actor.role == "admin"


def can_access_lead(actor: User, lead: Lead) -> bool:
    return is_admin(actor) or actor.id in (lead.referrer_id, lead.assigned_to_id)


def is_signer(actor: User, signers) -> bool:
    return find_signer(actor.id, actor.email, signers) is not None


def can_read_document(actor: User, document: Document, signers) -> bool:
    return document.owner_id == actor.id or is_signer(actor, signers)


def can_read_commission(actor: User, commission: Commission) -> bool:
    return is_admin(actor) or commission.referrer_id == actor.id


def find_signer(user_id, email, signers):
    """Signer entry for a user: by account first, then by e-mail."""
    if user_id is not None:
        for signer in signers:
            if signer.user_id is not None and signer.user_id == user_id:
                return signer
    if email:
        wanted = email.lower()
        for signer in signers:
            if signer.email.lower() == wanted:
                return signer
    return None

import logging
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy import delete, update
from sqlmodel import Session, select
from ..db import get_session
from ..models import Commission, Document, Lead, User, utcnow
from ..schemas import CommissionCreate, CommissionUpdate, CommissionStatus
from ..auth import resolve_actor, require_admin
from ..errors import ValidationError, NotFound, Forbidden, Conflict
from ..notifications import Notification, dispatch_all
from ..permissions import can_read_commission, is_admin, writable_patch
from ..workflow import commission_amount, commission_totals, running_total_delta

logger = logging.getLogger(__name__)

router = APIRouter()

def _serialize_commission(session: Session, c: Commission):
    referrer = session.get(User, c.referrer_id)
    lead = session.get(Lead, c.lead_id)
    doc = session.get(Document, c.document_id) if c.document_id else None
    return {
        "id": c.id,
        "referrer": {"id": referrer.id, "name": referrer.name, "email": referrer.email} if referrer else None,
        "lead": {
            "id": lead.id,
            "name": lead.name,
            "email": lead.email,
            "company": lead.company,
            "loan_amount": lead.loan_amount,
        } if lead else None,
        "document": {"id": doc.id, "title": doc.title, "status": doc.status} if doc else None,
        "loan_amount": c.loan_amount,
        "rate": c.rate,
        "amount": c.amount,
        "status": c.status,
        "paid_at": c.paid_at,
        "notes": c.notes,
        "created_at": c.created_at,
        "updated_at": c.updated_at,
    }

def _adjust_running_total(session: Session, referrer_id: int, delta: float):
    """Apply a paid-total increment/decrement in the caller's transaction."""
    if not delta:
        return
    result = session.exec(
        update(User)
        .where(User.id == referrer_id)
        .values(total_commission_earned=User.total_commission_earned + delta)
    )
    if result.rowcount == 0:
        logger.warning("Referrer %s not found; running total not adjusted by %s", referrer_id, delta)

def _load_commission(session: Session, commission_id: int, lock: bool = False) -> Commission:
    if lock:
        # row lock held until commit; re-reads a row already in the session
        commission = session.get(Commission, commission_id, with_for_update=True, populate_existing=True)
    else:
        commission = session.get(Commission, commission_id)
    if not commission:
        raise NotFound("Commission not found")
    return commission

def _claim_status(session: Session, commission: Commission, old_status: str, new_status: str):
    """Move the stored status only if it still reads ``old_status``."""
    result = session.exec(
        update(Commission)
        .where(Commission.id == commission.id, Commission.status == old_status)
        .values(status=new_status)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise Conflict("Commission was changed by another request; reload and retry")
    commission.status = new_status

def _paid_notification(session: Session, commission: Commission) -> Optional[Notification]:
    referrer = session.get(User, commission.referrer_id)
    if not referrer:
        return None
    lead = session.get(Lead, commission.lead_id)
    return Notification(
        recipient=referrer.email,
        kind="commission_paid",
        data={"amount": commission.amount, "lead_name": lead.name if lead else None},
    )

@router.post("", status_code=status.HTTP_201_CREATED)
def create_commission(
    data: CommissionCreate,
    session: Session = Depends(get_session),
    actor: User = Depends(require_admin),
):
    if not session.get(User, data.referrer_id):
        raise ValidationError("referrer_id", f"user {data.referrer_id} does not exist")
    if not session.get(Lead, data.lead_id):
        raise ValidationError("lead_id", f"lead {data.lead_id} does not exist")
    if data.document_id is not None and not session.get(Document, data.document_id):
        raise ValidationError("document_id", f"document {data.document_id} does not exist")
    commission = Commission(
        referrer_id=data.referrer_id,
        lead_id=data.lead_id,
        document_id=data.document_id,
        loan_amount=data.loan_amount,
        rate=data.rate,
        status=data.status,
        notes=data.notes,
    )
    if commission.status == "paid":
        commission.paid_at = utcnow()
    session.add(commission)
    amount = commission_amount(commission.loan_amount, commission.rate)
    # creating straight into paid counts like a transition into paid
    _adjust_running_total(session, commission.referrer_id, running_total_delta("", commission.status, amount))
    session.commit()
    session.refresh(commission)
    return _serialize_commission(session, commission)

@router.get("")
def list_commissions(
    status: Optional[CommissionStatus] = None,
    lead_id: Optional[int] = None,
    referrer_id: Optional[int] = None,
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    stmt = select(Commission)
    if not is_admin(actor):
        stmt = stmt.where(Commission.referrer_id == actor.id)
    elif referrer_id is not None:
        stmt = stmt.where(Commission.referrer_id == referrer_id)
    if status:
        stmt = stmt.where(Commission.status == status)
    if lead_id is not None:
        stmt = stmt.where(Commission.lead_id == lead_id)
    rows = session.exec(stmt.order_by(Commission.created_at.desc(), Commission.id.desc())).all()
    return {
        "count": len(rows),
        "totals": commission_totals(rows),
        "commissions": [_serialize_commission(session, c) for c in rows],
    }

@router.get("/{commission_id}")
def get_commission(
    commission_id: int,
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    commission = _load_commission(session, commission_id)
    if not can_read_commission(actor, commission):
        raise Forbidden("Not authorized to access this commission")
    return _serialize_commission(session, commission)

@router.put("/{commission_id}")
def update_commission(
    commission_id: int,
    payload: CommissionUpdate,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    actor: User = Depends(require_admin),
):
    commission = _load_commission(session, commission_id, lock=True)
    changes = writable_patch("commission", actor.role, payload.model_dump(exclude_unset=True))
    changes = {key: value for key, value in changes.items() if value is not None or key == "notes"}
    old_status = commission.status
    new_status = changes.get("status", old_status)
    touches_amount = any(
        key in changes and changes[key] != getattr(commission, key) for key in ("loan_amount", "rate")
    )
    if old_status == "paid" and touches_amount:
        raise Conflict("Loan amount and rate of a paid commission cannot change")
    if new_status != old_status:
        _claim_status(session, commission, old_status, new_status)
    for key, value in changes.items():
        setattr(commission, key, value)

    became_paid = old_status != "paid" and new_status == "paid"
    if became_paid:
        commission.paid_at = utcnow()
    elif old_status == "paid" and new_status != "paid":
        commission.paid_at = None
    amount = commission_amount(commission.loan_amount, commission.rate)
    session.add(commission)
    _adjust_running_total(session, commission.referrer_id, running_total_delta(old_status, new_status, amount))
    session.commit()
    session.refresh(commission)

    if became_paid:
        notification = _paid_notification(session, commission)
        if notification:
            background_tasks.add_task(dispatch_all, [notification])
    return _serialize_commission(session, commission)

@router.delete("/{commission_id}")
def delete_commission(
    commission_id: int,
    session: Session = Depends(get_session),
    actor: User = Depends(require_admin),
):
    commission = _load_commission(session, commission_id, lock=True)
    observed_status = commission.status
    removed = session.exec(
        delete(Commission)
        .where(Commission.id == commission.id, Commission.status == observed_status)
        .execution_options(synchronize_session=False)
    )
    if removed.rowcount == 0:
        raise Conflict("Commission was changed by another request; reload and retry")
    if observed_status == "paid":
        amount = commission_amount(commission.loan_amount, commission.rate)
        _adjust_running_total(session, commission.referrer_id, -amount)
    session.commit()
    return {"ok": True, "message": "Commission deleted successfully"}

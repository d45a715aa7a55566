from typing import Optional
from fastapi import APIRouter, Depends, status
from sqlmodel import Session, select, or_, delete
from ..db import get_session
from ..models import Lead, LeadNote, LeadDocument, Document, User, utcnow
from ..schemas import LeadCreate, LeadUpdate, NoteCreate, LeadDocumentAttach, LoanType, LeadStatus, LeadSource
from ..auth import resolve_actor, require_admin
from ..errors import ValidationError, NotFound, Forbidden
from ..permissions import can_access_lead, writable_patch

router = APIRouter()

def _serialize_user(user: Optional[User]):
    if not user:
        return None
    return {"id": user.id, "name": user.name, "email": user.email}

def _serialize_lead(session: Session, lead: Lead, detail: bool = False):
    data = {
        "id": lead.id,
        "name": lead.name,
        "email": lead.email,
        "phone": lead.phone,
        "company": lead.company,
        "loan_amount": lead.loan_amount,
        "loan_type": lead.loan_type,
        "status": lead.status,
        "source": lead.source,
        "expected_close_date": lead.expected_close_date,
        "referrer": _serialize_user(session.get(User, lead.referrer_id)) if lead.referrer_id else None,
        "assigned_to": _serialize_user(session.get(User, lead.assigned_to_id)) if lead.assigned_to_id else None,
        "created_at": lead.created_at,
        "updated_at": lead.updated_at,
    }
    if detail:
        notes = session.exec(
            select(LeadNote).where(LeadNote.lead_id == lead.id).order_by(LeadNote.created_at, LeadNote.id)
        ).all()
        docs = session.exec(
            select(Document)
            .join(LeadDocument, LeadDocument.document_id == Document.id)
            .where(LeadDocument.lead_id == lead.id)
            .order_by(LeadDocument.attached_at, LeadDocument.id)
        ).all()
        data["notes"] = [
            {
                "id": n.id,
                "content": n.content,
                "created_by": _serialize_user(session.get(User, n.created_by_id)),
                "created_at": n.created_at,
            }
            for n in notes
        ]
        data["documents"] = [{"id": d.id, "title": d.title, "status": d.status} for d in docs]
    return data

def _ensure_user(session: Session, user_id: Optional[int], field: str):
    if user_id is not None and not session.get(User, user_id):
        raise ValidationError(field, f"user {user_id} does not exist")

def _load_lead(session: Session, lead_id: int, actor: User) -> Lead:
    lead = session.get(Lead, lead_id)
    if not lead:
        raise NotFound("Lead not found")
    if not can_access_lead(actor, lead):
        raise Forbidden("Not authorized to access this lead")
    return lead

@router.post("", status_code=status.HTTP_201_CREATED)
def create_lead(
    data: LeadCreate,
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    referrer_id = data.referrer_id or actor.id
    _ensure_user(session, referrer_id, "referrer_id")
    _ensure_user(session, data.assigned_to_id, "assigned_to_id")
    lead = Lead(
        name=data.name,
        email=str(data.email).lower(),
        phone=data.phone,
        company=data.company,
        loan_amount=data.loan_amount,
        loan_type=data.loan_type,
        referrer_id=referrer_id,
        assigned_to_id=data.assigned_to_id,
        expected_close_date=data.expected_close_date,
        source=data.source,
    )
    session.add(lead)
    session.commit()
    session.refresh(lead)
    return _serialize_lead(session, lead)

@router.get("")
def list_leads(
    status: Optional[LeadStatus] = None,
    loan_type: Optional[LoanType] = None,
    source: Optional[LeadSource] = None,
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    stmt = select(Lead)
    if actor.role == "referrer":
        stmt = stmt.where(Lead.referrer_id == actor.id)
    elif actor.role == "user":
        stmt = stmt.where(or_(Lead.referrer_id == actor.id, Lead.assigned_to_id == actor.id))
    if status:
        stmt = stmt.where(Lead.status == status)
    if loan_type:
        stmt = stmt.where(Lead.loan_type == loan_type)
    if source:
        stmt = stmt.where(Lead.source == source)
    leads = session.exec(stmt.order_by(Lead.created_at.desc(), Lead.id.desc())).all()
    return {"count": len(leads), "leads": [_serialize_lead(session, lead) for lead in leads]}

@router.get("/{lead_id}")
def get_lead(
    lead_id: int,
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    lead = _load_lead(session, lead_id, actor)
    return _serialize_lead(session, lead, detail=True)

@router.put("/{lead_id}")
def update_lead(
    lead_id: int,
    payload: LeadUpdate,
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    lead = _load_lead(session, lead_id, actor)
    changes = writable_patch("lead", actor.role, payload.model_dump(exclude_unset=True))
    if "assigned_to_id" in changes:
        _ensure_user(session, changes["assigned_to_id"], "assigned_to_id")
    if changes.get("email") is not None:
        changes["email"] = str(changes["email"]).lower()
    for key, value in changes.items():
        if value is None and key in ("name", "email", "loan_amount", "loan_type", "status", "source"):
            continue
        setattr(lead, key, value)
    lead.updated_at = utcnow()
    session.add(lead)
    session.commit()
    session.refresh(lead)
    return _serialize_lead(session, lead)

@router.post("/{lead_id}/notes")
def add_note(
    lead_id: int,
    payload: NoteCreate,
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    lead = _load_lead(session, lead_id, actor)
    session.add(LeadNote(lead_id=lead.id, content=payload.content, created_by_id=actor.id))
    lead.updated_at = utcnow()
    session.add(lead)
    session.commit()
    session.refresh(lead)
    return _serialize_lead(session, lead, detail=True)

@router.post("/{lead_id}/documents")
def attach_document(
    lead_id: int,
    payload: LeadDocumentAttach,
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    lead = _load_lead(session, lead_id, actor)
    if not session.get(Document, payload.document_id):
        raise ValidationError("document_id", f"document {payload.document_id} does not exist")
    existing = session.exec(
        select(LeadDocument).where(
            LeadDocument.lead_id == lead.id, LeadDocument.document_id == payload.document_id
        )
    ).first()
    if not existing:
        session.add(LeadDocument(lead_id=lead.id, document_id=payload.document_id))
        lead.updated_at = utcnow()
        session.add(lead)
        session.commit()
        session.refresh(lead)
    return _serialize_lead(session, lead, detail=True)

@router.delete("/{lead_id}")
def delete_lead(
    lead_id: int,
    session: Session = Depends(get_session),
    actor: User = Depends(require_admin),
):
    lead = session.get(Lead, lead_id)
    if not lead:
        raise NotFound("Lead not found")
    session.exec(delete(LeadNote).where(LeadNote.lead_id == lead.id))
    session.exec(delete(LeadDocument).where(LeadDocument.lead_id == lead.id))
    session.delete(lead)
    session.commit()
    return {"ok": True}

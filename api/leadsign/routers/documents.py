import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from pydantic import TypeAdapter, ValidationError as PydanticValidationError
from sqlmodel import Session, select, or_, delete
from ..config import MAX_UPLOAD_BYTES, SIGNED_URL_TTL_SECONDS
from ..db import get_session
from ..models import Document, Signer, User, LeadDocument, Commission, LOAN_TYPES, utcnow
from ..schemas import SignerCreate, SignRequest, DeclineRequest
from ..auth import resolve_actor
from ..errors import ValidationError, NotFound, Forbidden, Conflict, UpstreamFailure
from ..permissions import can_read_document, find_signer
from ..storage import store_file, remove_file, signed_read_url, StorageError
from ..notifications import Notification, dispatch_all
from ..utils import signing_link
from ..workflow import derive_document_status, is_terminal

logger = logging.getLogger(__name__)

router = APIRouter()

_signer_list = TypeAdapter(List[SignerCreate])

def document_signers(session: Session, document_id: int) -> List[Signer]:
    return session.exec(
        select(Signer).where(Signer.document_id == document_id).order_by(Signer.position, Signer.id)
    ).all()

def serialize_signer(s: Signer):
    return {
        "id": s.id,
        "user_id": s.user_id,
        "email": s.email,
        "name": s.name,
        "status": s.status,
        "signed_at": s.signed_at,
        "signature_data": s.signature_data,
    }

def _serialize_document(session: Session, doc: Document, signers: Optional[List[Signer]] = None):
    owner = session.get(User, doc.owner_id)
    signers = signers if signers is not None else document_signers(session, doc.id)
    return {
        "id": doc.id,
        "title": doc.title,
        "description": doc.description,
        "file_url": doc.file_url,
        "file_key": doc.file_key,
        "file_size": doc.file_size,
        "content_type": doc.content_type,
        "owner": {"id": owner.id, "name": owner.name, "email": owner.email} if owner else None,
        "status": doc.status,
        "signers": [serialize_signer(s) for s in signers],
        "loan_details": {
            "amount": doc.loan_amount,
            "type": doc.loan_type,
            "referrer_id": doc.loan_referrer_id,
        },
        "completed_at": doc.completed_at,
        "created_at": doc.created_at,
        "updated_at": doc.updated_at,
    }

def _load_document(session: Session, document_id: int, lock: bool = False) -> Document:
    if lock:
        # row lock held until commit; re-reads a row already in the session
        doc = session.get(Document, document_id, with_for_update=True, populate_existing=True)
    else:
        doc = session.get(Document, document_id)
    if not doc:
        raise NotFound("Document not found")
    return doc

def _current_statuses(session: Session, document_id: int) -> List[str]:
    # column query, so rows cached in the session cannot mask other writers
    return list(session.exec(select(Signer.status).where(Signer.document_id == document_id)).all())

def _require_owner(doc: Document, actor: User, detail: str = "Not authorized"):
    if doc.owner_id != actor.id:
        raise Forbidden(detail)

def _parse_signers(raw: Optional[str]) -> List[SignerCreate]:
    if not raw:
        return []
    try:
        return _signer_list.validate_json(raw)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError("signers", f"{location}: {first.get('msg')}".strip(": "))

def sign_as(session: Session, doc: Document, signer: Signer, signature_data: str):
    """Record one signature and recompute the document status in one commit.

    The document row is locked and re-read first, and the status is derived
    from the signer rows as stored after this signature is flushed, so two
    signers finishing at the same time still leave the document completed.
    """
    session.refresh(doc, with_for_update=True)
    session.refresh(signer)
    if signer.status == "signed":
        raise Conflict("Document already signed")
    if signer.status == "declined" or is_terminal(doc.status):
        raise Conflict(f"Document is {doc.status} and can no longer be signed")
    now = utcnow()
    signer.status = "signed"
    signer.signed_at = now
    signer.signature_data = signature_data
    session.add(signer)
    session.flush()
    doc.status = derive_document_status(_current_statuses(session, doc.id), doc.status)
    if doc.status == "completed":
        doc.completed_at = now
    doc.updated_at = now
    session.add(doc)
    session.commit()
    session.refresh(doc)
    logger.info("Document %s signed by %s, status %s", doc.id, signer.email, doc.status)
    return doc

def decline_as(session: Session, doc: Document, signer: Signer):
    session.refresh(doc, with_for_update=True)
    session.refresh(signer)
    if signer.status != "pending" or is_terminal(doc.status):
        raise Conflict(f"Signer already {signer.status}; document is {doc.status}")
    signer.status = "declined"
    session.add(signer)
    session.flush()
    doc.status = derive_document_status(_current_statuses(session, doc.id), doc.status)
    doc.updated_at = utcnow()
    session.add(doc)
    session.commit()
    session.refresh(doc)
    logger.info("Document %s declined by %s", doc.id, signer.email)
    return doc

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_document(
    file: UploadFile = File(...),
    title: Optional[str] = Form(default=None),
    description: Optional[str] = Form(default=None),
    signers: Optional[str] = Form(default=None),
    loan_amount: Optional[float] = Form(default=None),
    loan_type: Optional[str] = Form(default=None),
    referrer_id: Optional[int] = Form(default=None),
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    content_type = file.content_type or ""
    if content_type != "application/pdf" and not content_type.startswith("image/"):
        raise ValidationError("file", "Only PDF and image files are allowed")
    data = await file.read()
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationError("file", f"File exceeds the {MAX_UPLOAD_BYTES} byte limit")
    roster = _parse_signers(signers)
    for entry in roster:
        if entry.user_id is not None and not session.get(User, entry.user_id):
            raise ValidationError("signers", f"user {entry.user_id} does not exist")
    if loan_type is not None and loan_type not in LOAN_TYPES:
        raise ValidationError("loan_type", f"must be one of {', '.join(LOAN_TYPES)}")
    if referrer_id is not None and not session.get(User, referrer_id):
        raise ValidationError("referrer_id", f"user {referrer_id} does not exist")

    filename = file.filename or "upload"
    try:
        locator = store_file(data, content_type, filename)
    except StorageError as exc:
        raise UpstreamFailure(str(exc))

    doc = Document(
        title=(title or "").strip() or filename,
        description=description,
        file_url=locator["url"],
        file_key=locator["key"],
        file_size=len(data),
        content_type=content_type,
        owner_id=actor.id,
        status="draft",
        loan_amount=loan_amount,
        loan_type=loan_type,
        loan_referrer_id=referrer_id,
    )
    session.add(doc)
    session.flush()
    for idx, entry in enumerate(roster):
        session.add(Signer(
            document_id=doc.id,
            position=idx,
            user_id=entry.user_id,
            email=str(entry.email).lower(),
            name=entry.name,
        ))
    session.commit()
    session.refresh(doc)
    return _serialize_document(session, doc)

@router.get("")
def list_documents(
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    signed_doc_ids = select(Signer.document_id).where(
        or_(Signer.user_id == actor.id, Signer.email == actor.email.lower())
    )
    docs = session.exec(
        select(Document)
        .where(or_(Document.owner_id == actor.id, Document.id.in_(signed_doc_ids)))
        .order_by(Document.created_at.desc(), Document.id.desc())
    ).all()
    return {"count": len(docs), "documents": [_serialize_document(session, d) for d in docs]}

@router.get("/{document_id}")
def get_document(
    document_id: int,
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    doc = _load_document(session, document_id)
    signers = document_signers(session, doc.id)
    if not can_read_document(actor, doc, signers):
        raise Forbidden("Not authorized to access this document")
    try:
        url = signed_read_url(doc.file_key, SIGNED_URL_TTL_SECONDS)
    except StorageError as exc:
        raise UpstreamFailure(str(exc))
    return {**_serialize_document(session, doc, signers), "file_signed_url": url}

@router.post("/{document_id}/send")
def request_signatures(
    document_id: int,
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    doc = _load_document(session, document_id)
    _require_owner(doc, actor)
    if is_terminal(doc.status):
        raise Conflict(f"Document is {doc.status}")
    signers = document_signers(session, doc.id)
    owner = session.get(User, doc.owner_id)
    jobs = [
        Notification(
            recipient=s.email,
            kind="signature_request",
            data={
                "document_title": doc.title,
                "sign_url": signing_link(doc.id, s.email),
                "sender_name": owner.name if owner else None,
                "reply_to": owner.email if owner else None,
            },
        )
        for s in signers
        if s.status == "pending"
    ]
    delivered = dispatch_all(jobs)

    # status is written only after every dispatch has been attempted; a
    # signer may have finished the document while notices were going out
    session.refresh(doc, with_for_update=True)
    if not is_terminal(doc.status):
        doc.status = "pending"
        doc.updated_at = utcnow()
        session.add(doc)
    session.commit()
    return {"ok": True, "status": doc.status, "attempted": len(jobs), "notified": delivered}

@router.post("/{document_id}/sign")
def sign_document(
    document_id: int,
    payload: SignRequest,
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    doc = _load_document(session, document_id)
    signers = document_signers(session, doc.id)
    signer = find_signer(actor.id, actor.email, signers)
    if signer is None:
        raise Forbidden("You are not authorized to sign this document")
    sign_as(session, doc, signer, payload.signature_data)
    return {"ok": True, "document": _serialize_document(session, doc)}

@router.post("/{document_id}/decline")
def decline_document(
    document_id: int,
    payload: DeclineRequest,
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    doc = _load_document(session, document_id)
    signers = document_signers(session, doc.id)
    signer = find_signer(actor.id, actor.email, signers)
    if signer is None:
        raise Forbidden("You are not authorized to decline this document")
    decline_as(session, doc, signer)
    if payload.reason:
        logger.info("Document %s decline reason: %s", doc.id, payload.reason)
    return {"ok": True, "document": _serialize_document(session, doc)}

@router.delete("/{document_id}")
def delete_document(
    document_id: int,
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    doc = _load_document(session, document_id, lock=True)
    _require_owner(doc, actor, "Not authorized to delete this document")
    try:
        remove_file(doc.file_key)
    except StorageError as exc:
        raise UpstreamFailure(str(exc))
    session.exec(delete(Signer).where(Signer.document_id == doc.id))
    session.exec(delete(LeadDocument).where(LeadDocument.document_id == doc.id))
    for commission in session.exec(select(Commission).where(Commission.document_id == doc.id)).all():
        commission.document_id = None
        session.add(commission)
    session.delete(doc)
    session.commit()
    return {"ok": True}

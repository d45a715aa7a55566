from fastapi import APIRouter, Depends
from sqlmodel import Session
from ..config import SIGNED_URL_TTL_SECONDS
from ..db import get_session
from ..models import Document
from ..schemas import SignRequest
from ..errors import Forbidden, NotFound, UpstreamFailure
from ..permissions import find_signer
from ..storage import signed_read_url, StorageError
from ..utils import read_token
from .documents import document_signers, serialize_signer, sign_as

router = APIRouter()

def _resolve(session: Session, token: str):
    data = read_token(token)
    if not isinstance(data, dict) or "document_id" not in data or "email" not in data:
        raise Forbidden("Invalid signing link")
    doc = session.get(Document, data["document_id"])
    if not doc:
        raise NotFound("Document not found")
    signers = document_signers(session, doc.id)
    signer = find_signer(None, data["email"], signers)
    if signer is None:
        raise Forbidden("You are not authorized to sign this document")
    return doc, signers, signer

@router.get("/{token}")
def load_signing_view(token: str, session: Session = Depends(get_session)):
    doc, signers, signer = _resolve(session, token)
    try:
        url = signed_read_url(doc.file_key, SIGNED_URL_TTL_SECONDS)
    except StorageError as exc:
        raise UpstreamFailure(str(exc))
    waiting_on = len([s for s in signers if s.status != "signed" and s.id != signer.id])
    return {
        "document": {
            "id": doc.id,
            "title": doc.title,
            "description": doc.description,
            "status": doc.status,
            "file_signed_url": url,
        },
        "signer": serialize_signer(signer),
        "waiting_on": waiting_on,
    }

@router.post("/{token}")
def sign_with_link(token: str, payload: SignRequest, session: Session = Depends(get_session)):
    doc, signers, signer = _resolve(session, token)
    sign_as(session, doc, signer, payload.signature_data)
    return {"ok": True, "status": doc.status, "completed_at": doc.completed_at}

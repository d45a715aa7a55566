from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select
from ..db import get_session
from ..models import Commission, Document, Lead, LeadNote, Signer, User
from ..schemas import UserUpdate, Role
from ..auth import resolve_actor, require_admin
from ..errors import Conflict, Forbidden, NotFound
from ..permissions import is_admin, writable_patch

router = APIRouter()

# rows that cannot exist without their user; while any remain the account is deactivated, not deleted
_OWNED_RECORDS = (
    ("commissions", Commission.referrer_id),
    ("documents", Document.owner_id),
    ("lead notes", LeadNote.created_by_id),
)

# optional links dropped when the user goes; signers keep their e-mail
_CLEARED_REFERENCES = (
    (Lead, "referrer_id"),
    (Lead, "assigned_to_id"),
    (Document, "loan_referrer_id"),
    (Signer, "user_id"),
)

def serialize_user(user: User):
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "commission_rate": user.commission_rate,
        "active": user.active,
        "total_commission_earned": user.total_commission_earned,
        "created_at": user.created_at,
    }

def _ensure_self_or_admin(actor: User, user_id: int, verb: str):
    if actor.id != user_id and not is_admin(actor):
        raise Forbidden(f"Not authorized to {verb} this user")

@router.get("")
def list_users(
    role: Optional[Role] = None,
    active: Optional[bool] = None,
    session: Session = Depends(get_session),
    actor: User = Depends(require_admin),
):
    stmt = select(User)
    if role:
        stmt = stmt.where(User.role == role)
    if active is not None:
        stmt = stmt.where(User.active == active)
    users = session.exec(stmt.order_by(User.created_at.desc(), User.id.desc())).all()
    return {"count": len(users), "users": [serialize_user(u) for u in users]}

# declared before /{user_id} so the literal path wins
@router.get("/referrers/list")
def list_referrers(
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    referrers = session.exec(
        select(User).where(User.role.in_(("referrer", "admin")), User.active == True)  # noqa: E712
    ).all()
    return {
        "count": len(referrers),
        "referrers": [
            {
                "id": u.id,
                "name": u.name,
                "email": u.email,
                "commission_rate": u.commission_rate,
                "total_commission_earned": u.total_commission_earned,
            }
            for u in referrers
        ],
    }

@router.get("/{user_id}")
def get_user(
    user_id: int,
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    _ensure_self_or_admin(actor, user_id, "access")
    user = session.get(User, user_id)
    if not user:
        raise NotFound("User not found")
    return serialize_user(user)

@router.put("/{user_id}")
def update_user(
    user_id: int,
    payload: UserUpdate,
    session: Session = Depends(get_session),
    actor: User = Depends(resolve_actor),
):
    _ensure_self_or_admin(actor, user_id, "update")
    user = session.get(User, user_id)
    if not user:
        raise NotFound("User not found")
    capability = "admin" if is_admin(actor) else "self"
    changes = writable_patch("user", capability, payload.model_dump(exclude_unset=True))
    if changes.get("email"):
        changes["email"] = str(changes["email"]).lower()
        clash = session.exec(select(User).where(User.email == changes["email"], User.id != user.id)).first()
        if clash:
            raise Conflict("email already in use")
    for key, value in changes.items():
        if value is not None:
            setattr(user, key, value)
    session.add(user)
    session.commit()
    session.refresh(user)
    return serialize_user(user)

@router.delete("/{user_id}")
def delete_user(
    user_id: int,
    session: Session = Depends(get_session),
    actor: User = Depends(require_admin),
):
    user = session.get(User, user_id)
    if not user:
        raise NotFound("User not found")
    held = [
        label for label, column in _OWNED_RECORDS
        if session.exec(select(column).where(column == user.id).limit(1)).first() is not None
    ]
    if held:
        raise Conflict(f"User still has {', '.join(held)}; deactivate the account instead")
    for model, field in _CLEARED_REFERENCES:
        session.exec(
            update(model)
            .where(getattr(model, field) == user.id)
            .values({field: None})
            .execution_options(synchronize_session=False)
        )
    session.delete(user)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise Conflict("User is still referenced; deactivate the account instead")
    return {"ok": True, "message": "User deleted successfully"}

from typing import Optional
from datetime import datetime, timezone
from sqlalchemy import UniqueConstraint, event
from sqlmodel import SQLModel, Field as ORMField

from .workflow import commission_amount

ROLES = ("admin", "referrer", "user")
LOAN_TYPES = ("business", "equipment", "real_estate", "working_capital", "other")

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class User(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    name: str
    email: str = ORMField(index=True, unique=True)
    role: str = "user"  # admin|referrer|user
    access_token: str = ORMField(index=True, unique=True)
    commission_rate: float = 0.0
    active: bool = True
    total_commission_earned: float = 0.0
    created_at: datetime = ORMField(default_factory=utcnow)

class Lead(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    name: str
    email: str
    phone: Optional[str] = None
    company: Optional[str] = None
    loan_amount: float
    loan_type: str = "business"  # business|equipment|real_estate|working_capital|other
    status: str = "new"  # new|contacted|qualified|proposal_sent|negotiating|won|lost
    referrer_id: Optional[int] = ORMField(default=None, foreign_key="user.id")
    assigned_to_id: Optional[int] = ORMField(default=None, foreign_key="user.id")
    expected_close_date: Optional[datetime] = None
    source: str = "referral"  # website|referral|cold_call|email|other
    created_at: datetime = ORMField(default_factory=utcnow)
    updated_at: datetime = ORMField(default_factory=utcnow)

class LeadNote(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    lead_id: int = ORMField(foreign_key="lead.id", index=True)
    content: str
    created_by_id: int = ORMField(foreign_key="user.id")
    created_at: datetime = ORMField(default_factory=utcnow)

class LeadDocument(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("lead_id", "document_id", name="uq_lead_document"),)

    id: Optional[int] = ORMField(default=None, primary_key=True)
    lead_id: int = ORMField(foreign_key="lead.id", index=True)
    document_id: int = ORMField(foreign_key="document.id")
    attached_at: datetime = ORMField(default_factory=utcnow)

class Document(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    title: str
    description: Optional[str] = None
    file_url: str
    file_key: str
    file_size: Optional[int] = None
    content_type: Optional[str] = None
    owner_id: int = ORMField(foreign_key="user.id", index=True)
    status: str = "draft"  # draft|pending|partially_signed|completed|declined
    loan_amount: Optional[float] = None
    loan_type: Optional[str] = None
    loan_referrer_id: Optional[int] = ORMField(default=None, foreign_key="user.id")
    completed_at: Optional[datetime] = None
    created_at: datetime = ORMField(default_factory=utcnow)
    updated_at: datetime = ORMField(default_factory=utcnow)

class Signer(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    document_id: int = ORMField(foreign_key="document.id", index=True)
    position: int = 0
    user_id: Optional[int] = ORMField(default=None, foreign_key="user.id")
    email: str
    name: str
    status: str = "pending"  # pending|signed|declined
    signed_at: Optional[datetime] = None
    signature_data: Optional[str] = None

class Commission(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    referrer_id: int = ORMField(foreign_key="user.id", index=True)
    lead_id: int = ORMField(foreign_key="lead.id", index=True)
    document_id: Optional[int] = ORMField(default=None, foreign_key="document.id")
    loan_amount: float
    rate: float
    amount: float = 0.0
    status: str = "pending"  # pending|approved|paid|cancelled
    paid_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime = ORMField(default_factory=utcnow)
    updated_at: datetime = ORMField(default_factory=utcnow)

@event.listens_for(Commission, "before_insert")
@event.listens_for(Commission, "before_update")
def _recompute_commission_amount(mapper, connection, target: Commission):
    # amount is only ever derived from its inputs
    target.amount = commission_amount(target.loan_amount, target.rate)
    target.updated_at = utcnow()

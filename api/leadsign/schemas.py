from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, EmailStr, Field, field_validator

LoanType = Literal["business", "equipment", "real_estate", "working_capital", "other"]
LeadStatus = Literal["new", "contacted", "qualified", "proposal_sent", "negotiating", "won", "lost"]
LeadSource = Literal["website", "referral", "cold_call", "email", "other"]
CommissionStatus = Literal["pending", "approved", "paid", "cancelled"]
Role = Literal["admin", "referrer", "user"]


def _not_blank(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


class LeadCreate(BaseModel):
    name: str
    email: EmailStr
    phone: Optional[str] = None
    company: Optional[str] = None
    loan_amount: float
    loan_type: LoanType = "business"
    referrer_id: Optional[int] = None
    assigned_to_id: Optional[int] = None
    expected_close_date: Optional[datetime] = None
    source: LeadSource = "referral"

    @field_validator("name")
    @classmethod
    def check_name(cls, value):
        return _not_blank(value)

class LeadUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    loan_amount: Optional[float] = None
    loan_type: Optional[LoanType] = None
    status: Optional[LeadStatus] = None
    assigned_to_id: Optional[int] = None
    expected_close_date: Optional[datetime] = None
    source: Optional[LeadSource] = None

    @field_validator("name")
    @classmethod
    def check_name(cls, value):
        return _not_blank(value)

class NoteCreate(BaseModel):
    content: str

    @field_validator("content")
    @classmethod
    def check_content(cls, value):
        return _not_blank(value)

class LeadDocumentAttach(BaseModel):
    document_id: int

class SignerCreate(BaseModel):
    email: EmailStr
    name: str
    user_id: Optional[int] = None

    @field_validator("name")
    @classmethod
    def check_name(cls, value):
        return _not_blank(value)

class SignRequest(BaseModel):
    signature_data: str

    @field_validator("signature_data")
    @classmethod
    def check_signature(cls, value):
        return _not_blank(value)

class DeclineRequest(BaseModel):
    reason: Optional[str] = None

class CommissionCreate(BaseModel):
    referrer_id: int
    lead_id: int
    document_id: Optional[int] = None
    loan_amount: float = Field(ge=0)
    rate: float = Field(ge=0, le=100)
    status: CommissionStatus = "pending"
    notes: Optional[str] = None

class CommissionUpdate(BaseModel):
    status: Optional[CommissionStatus] = None
    notes: Optional[str] = None
    loan_amount: Optional[float] = Field(default=None, ge=0)
    rate: Optional[float] = Field(default=None, ge=0, le=100)

class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    commission_rate: Optional[float] = Field(default=None, ge=0, le=100)
    active: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def check_name(cls, value):
        return _not_blank(value)


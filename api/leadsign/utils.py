from typing import Optional
from itsdangerous import BadData, URLSafeSerializer
from .config import SECRET_KEY, WEB_BASE_URL

def make_token(payload: dict) -> str:
    s = URLSafeSerializer(SECRET_KEY, salt="signing")
    return s.dumps(payload)

def read_token(token: str) -> Optional[dict]:
    s = URLSafeSerializer(SECRET_KEY, salt="signing")
    try:
        return s.loads(token)
    except BadData:
        return None

def signing_link(document_id: int, email: str) -> str:
    token = make_token({"document_id": document_id, "email": email.lower()})
    return f"{WEB_BASE_URL}/sign/{token}"

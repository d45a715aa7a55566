import argparse
import secrets
from sqlmodel import Session, select

from leadsign.db import engine, init_db
from leadsign.models import User, ROLES

parser = argparse.ArgumentParser(description="Create a user and print its access token")
parser.add_argument("name")
parser.add_argument("email")
parser.add_argument("--role", choices=ROLES, default="user")
parser.add_argument("--commission-rate", type=float, default=0.0)
args = parser.parse_args()

init_db()

with Session(engine) as session:
    email = args.email.lower()
    if session.exec(select(User).where(User.email == email)).first():
        raise SystemExit(f"user {email} already exists")
    user = User(
        name=args.name,
        email=email,
        role=args.role,
        commission_rate=args.commission_rate,
        access_token=secrets.token_urlsafe(32),
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    print(f"Created {user.role} {user.email} (id {user.id})")
    print(f"Access token: {user.access_token}")

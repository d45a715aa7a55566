from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .routers import leads, documents, signing, commissions, users
from .db import init_db
from .logging_setup import setup_logging

setup_logging()

app = FastAPI(title="Lead Referral & Signing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def on_startup():
    init_db()

app.include_router(leads.router, prefix="/api/leads", tags=["leads"])
app.include_router(documents.router, prefix="/api/documents", tags=["documents"])
app.include_router(signing.router, prefix="/api/sign", tags=["signing"])
app.include_router(commissions.router, prefix="/api/commissions", tags=["commissions"])
app.include_router(users.router, prefix="/api/users", tags=["users"])

@app.get("/")
def root():
    return {"ok": True, "service": "leadsign-api"}

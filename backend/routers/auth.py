import time
import sqlite3
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.config import ALLOW_SELF_REGISTRATION
from backend.security import issue_session_token, require_session
from database.db import create_tables, create_user, verify_user_credentials

router = APIRouter()


class LoginRequest(BaseModel):
    username: str
    password: str


class RegisterRequest(BaseModel):
    username: str
    password: str
    full_name: str
    role: Literal["student", "ta"] = "student"


def _token_response(user: dict) -> dict:
    token, claims = issue_session_token(user["id"], user["username"], user["role"])
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "user_id": claims["uid"],
        "username": claims["sub"],
        "role": claims["role"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


@router.post("/auth/login")
def login(payload: LoginRequest):
    username = payload.username.strip()
    password = payload.password.strip()

    if not username:
        raise HTTPException(status_code=400, detail="Username is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        user = verify_user_credentials(username, password)
    except sqlite3.OperationalError:
        # Self-heal when DB schema is missing (e.g., startup/lifespan skipped).
        try:
            create_tables()
            user = verify_user_credentials(username, password)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )

    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return _token_response(user)


@router.post("/auth/register", status_code=201)
def register(payload: RegisterRequest):
    if not ALLOW_SELF_REGISTRATION:
        raise HTTPException(status_code=403, detail="Registration is disabled.")

    username = payload.username.strip()
    password = payload.password.strip()
    full_name = payload.full_name.strip()
    if not username or not password or not full_name:
        raise HTTPException(status_code=400, detail="All fields are required.")

    try:
        user_id = create_user(username, password, full_name, payload.role)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Username already exists.")

    return _token_response({"id": user_id, "username": username, "role": payload.role})


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    return {
        "user_id": session.get("uid"),
        "username": session.get("sub"),
        "role": session.get("role"),
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }

# Accounts and bearer-token authentication shared by the REST routes and the change channels.
from __future__ import annotations

import os
import time
from typing import Any, Dict, Optional

import jwt
from fastapi import APIRouter, Depends, HTTPException, Header, status
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models, schemas
from ..errors import Unauthenticated
from ..rate_limit import rate_limit

router = APIRouter()

JWT_SECRET: str = os.getenv("KAAMCONNECT_JWT_SECRET", "dev-secret-change-me")
JWT_ALG: str = "HS256"
# Seven days unless overridden
JWT_TTL_SECONDS: int = int(os.getenv("KAAMCONNECT_JWT_TTL_SECONDS", str(60 * 60 * 24 * 7)))
# bcrypt_sha256 avoids bcrypt truncating passwords at 72 bytes
pwd_context = CryptContext(schemes=["bcrypt_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def issue_token(user: models.User) -> schemas.TokenResponse:
    issued_at = int(time.time())
    claims: Dict[str, Any] = {
        "sub": str(user.id),
        "email": user.email,
        "name": user.full_name,
        "iat": issued_at,
        "exp": issued_at + JWT_TTL_SECONDS,
    }
    return schemas.TokenResponse(
        access_token=jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALG),
        user=schemas.UserRead.model_validate(user),
    )


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError as exc:
        raise Unauthenticated("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise Unauthenticated("Invalid token") from exc


def user_from_token(db: Session, token: str) -> models.User:
    """Resolve a bearer token to its user. Raises Unauthenticated."""
    subject = decode_token(token).get("sub")
    if not subject or not str(subject).isdigit():
        raise Unauthenticated("Invalid token payload")
    user = db.get(models.User, int(subject))
    if user is None:
        raise Unauthenticated("User not found")
    return user


def bearer_token(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if not authorization:
        raise Unauthenticated("Authorization header missing")
    if scheme.lower() != "bearer" or not token:
        raise Unauthenticated("Invalid Authorization header")
    return token


def get_current_user(
    db: Session = Depends(get_db),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> models.User:
    return user_from_token(db, bearer_token(authorization))


@router.post(
    "/auth/signup",
    response_model=schemas.TokenResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("signup"))],
)
def signup(payload: schemas.UserCreate, db: Session = Depends(get_db)) -> schemas.TokenResponse:
    taken = db.query(models.User.id).filter(models.User.email == payload.email).first()
    if taken is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    user = models.User(
        email=payload.email,
        password_hash=hash_password(payload.password),
        full_name=payload.full_name,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return issue_token(user)


@router.post("/auth/login", response_model=schemas.TokenResponse, dependencies=[Depends(rate_limit("login"))])
def login(payload: schemas.LoginRequest, db: Session = Depends(get_db)) -> schemas.TokenResponse:
    user = db.query(models.User).filter(models.User.email == payload.email).first()
    if user is None or not verify_password(payload.password, user.password_hash):
        raise Unauthenticated("Invalid credentials")
    return issue_token(user)


@router.get("/auth/me", response_model=schemas.UserRead)
def me(user: models.User = Depends(get_current_user)) -> models.User:
    return user

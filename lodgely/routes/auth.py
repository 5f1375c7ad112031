from __future__ import annotations

import os
import time
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models
from ..identity import SessionIdentity, Viewer
from ..services import Services

# Token issuing (sign-up/login) lives outside this service; we only verify.
JWT_SECRET: str = os.getenv("LODGELY_JWT_SECRET", "dev-secret-change-me")
JWT_ALG: str = "HS256"
JWT_TTL_SECONDS: int = 60 * 60 * 24 * 7  # 7 days


# ----------------
# Helpers
# ----------------
def create_access_token(*, profile: models.Profile, ttl_seconds: int = JWT_TTL_SECONDS) -> str:
    now = int(time.time())
    payload = {
        "sub": str(profile.id),
        "email": profile.email,
        "role": profile.role,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc


def bearer_token_from_auth_header(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authorization header missing")
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Authorization header")
    return parts[1]


def viewer_from_token(db: Session, token: str) -> Viewer:
    payload = decode_token(token)
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    profile = db.get(models.Profile, int(sub))
    if not profile:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Profile not found")
    return Viewer(id=profile.id, role=profile.role)


# ----------------
# Dependencies
# ----------------
def get_services(request: Request) -> Services:
    return request.app.state.services


def get_viewer(
    db: Session = Depends(get_db),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> Viewer:
    return viewer_from_token(db, bearer_token_from_auth_header(authorization))


def get_identity(viewer: Viewer = Depends(get_viewer)) -> SessionIdentity:
    # One identity per request; components read the viewer from it instead of globals
    return SessionIdentity(viewer)


def require_owner(viewer: Viewer = Depends(get_viewer)) -> Viewer:
    if viewer.role != "owner":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Owner role required")
    return viewer

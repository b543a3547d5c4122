import logging
import os

from fastapi import APIRouter, Depends, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from .. import models, schemas
from ..auth import create_access_token, get_current_user, get_password_hash, verify_password
from ..database import get_db

# purpose: curator accounts and bearer tokens for the matrix editor api
# status: pilot

logger = logging.getLogger(__name__)
limiter = Limiter(key_func=get_remote_address)
_rate_limits_enabled = os.getenv("TESTING") != "1"


def throttled(limit: str):
    if not _rate_limits_enabled:
        return lambda func: func
    return limiter.limit(limit)


def _find_user(db: Session, email: str) -> models.User | None:
    return db.query(models.User).filter(models.User.email == email).first()


def _issue_token(user: models.User) -> schemas.Token:
    return schemas.Token(access_token=create_access_token({"sub": user.email}))


router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", response_model=schemas.Token)
@throttled("5/minute")
async def register(request: Request, payload: schemas.UserCreate, db: Session = Depends(get_db)):
    if _find_user(db, payload.email) is not None:
        raise HTTPException(status_code=400, detail="Email already registered")
    curator = models.User(
        email=payload.email,
        hashed_password=get_password_hash(payload.password),
        full_name=payload.full_name,
    )
    db.add(curator)
    db.commit()
    db.refresh(curator)
    logger.info("registered curator %s", curator.id)
    return _issue_token(curator)


@router.post("/login", response_model=schemas.Token)
@throttled("10/minute")
async def login(request: Request, payload: schemas.LoginRequest, db: Session = Depends(get_db)):
    curator = _find_user(db, payload.email)
    if curator is None or not verify_password(payload.password, curator.hashed_password):
        logger.info("rejected login for %s", payload.email)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not curator.is_active:
        raise HTTPException(status_code=403, detail="Account disabled")
    return _issue_token(curator)


@router.get("/me", response_model=schemas.UserOut)
async def me(user: models.User = Depends(get_current_user)):
    return user

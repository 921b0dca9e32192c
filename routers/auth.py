import logging

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from database import get_session
from errors import AuthorizationError, ConflictError, ValidationError
from models import User
from schemas import LoginRequest, RegisterRequest, UserOut
from security import get_user_by_email, hash_password, token_for, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, session: Session = Depends(get_session)):
    if get_user_by_email(session, payload.email):
        raise ConflictError("Email already registered")

    user = User(
        name=payload.name,
        email=payload.email.strip().lower(),
        password_hash=hash_password(payload.password),
        role="regular",
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info("Registered user %s", user.id)

    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "access_token": token_for(user),
        "token_type": "bearer",
    }


@router.post("/login")
def login(payload: LoginRequest, session: Session = Depends(get_session)):
    user = get_user_by_email(session, payload.email)
    if not user or not verify_password(payload.password, user.password_hash):
        raise ValidationError("Invalid credentials")
    if not user.active:
        raise AuthorizationError("Account is deactivated")

    return {
        "access_token": token_for(user),
        "token_type": "bearer",
        "user": UserOut.model_validate(user, from_attributes=True).model_dump(mode="json"),
    }

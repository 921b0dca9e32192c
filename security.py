from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jwt import InvalidTokenError
from passlib.context import CryptContext
from sqlmodel import Session, select

import config
from database import get_session
from errors import AuthenticationError
from models import User
from permissions import Caller, Role, require_writer

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{config.API_PREFIX}/auth/login", auto_error=False)


# ----------------------
# Utility Functions
# ----------------------

def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)
    return encoded_jwt


def token_for(user: User) -> str:
    return create_access_token({"sub": str(user.id)})


def decode_subject(token: str) -> Optional[str]:
    """Subject of a valid token, or None. Does not touch the user store."""
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except InvalidTokenError:
        return None
    return payload.get("sub")


def get_user_by_email(session: Session, email: str) -> Optional[User]:
    return session.exec(select(User).where(User.email == email.strip().lower())).first()


def caller_for(user: User) -> Caller:
    return Caller(id=user.id, role=Role(user.role), delegate_of=user.delegate_of)


# ----------------------
# Dependencies
# ----------------------

def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    session: Session = Depends(get_session),
) -> Caller:
    if not token:
        raise AuthenticationError("Token not provided")

    user_id = decode_subject(token)
    if user_id is None:
        raise AuthenticationError("Invalid token")
    try:
        user = session.get(User, int(user_id))
    except ValueError:
        raise AuthenticationError("Invalid token")
    if user is None:
        raise AuthenticationError("User not found")
    if not user.active:
        raise AuthenticationError("Account is deactivated")
    return caller_for(user)


def get_writer(caller: Caller = Depends(get_current_user)) -> Caller:
    return require_writer(caller)

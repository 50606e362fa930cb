from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Optional

import bcrypt as _bcrypt_module
import jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ConflictError, UnauthorizedError, ValidationFailed
from ..orm_models import CompanyORM, CompanyRole, UserORM

logger = logging.getLogger(__name__)

BCRYPT_MAX_BYTES = 72

# passlib still reads bcrypt.__about__ and probes hashpw with an over-long secret.
if not hasattr(_bcrypt_module, "__about__") and hasattr(_bcrypt_module, "__version__"):
    _bcrypt_module.__about__ = SimpleNamespace(__version__=_bcrypt_module.__version__)
    _original_hashpw = _bcrypt_module.hashpw

    def _hashpw_with_truncate(secret: bytes, salt: bytes) -> bytes:
        try:
            return _original_hashpw(secret, salt)
        except ValueError:
            if len(secret) > BCRYPT_MAX_BYTES:
                return _original_hashpw(secret[:BCRYPT_MAX_BYTES], salt)
            raise

    _bcrypt_module.hashpw = _hashpw_with_truncate


pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
ALGORITHM = "HS256"


def _ensure_password_within_limit(password: str) -> None:
    if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValidationFailed(
            "Password must be 72 bytes or fewer",
            field="password",
        )


def hash_password(password: str) -> str:
    _ensure_password_within_limit(password)
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        return False


def get_user_by_email(session: Session, email: str) -> Optional[UserORM]:
    return session.execute(select(UserORM).where(UserORM.email == email.strip().lower())).scalar_one_or_none()


def create_user(
    session: Session,
    *,
    email: str,
    password: str,
    full_name: str,
    company: CompanyORM | None = None,
    role_in_company: str = CompanyRole.MEMBER.value,
) -> UserORM:
    normalized_email = email.strip().lower()
    if get_user_by_email(session, normalized_email):
        raise ConflictError("A user with this email already exists", "DUPLICATE_EMAIL", field="email")
    if role_in_company not in {item.value for item in CompanyRole}:
        raise ValidationFailed("Unknown company role", field="roleInCompany")

    user = UserORM(
        email=normalized_email,
        full_name=full_name.strip() or normalized_email,
        password_hash=hash_password(password),
        company_id=company.id if company is not None else None,
        role_in_company=role_in_company,
    )
    session.add(user)
    session.flush()
    return user


def authenticate_user(session: Session, email: str, password: str) -> Optional[UserORM]:
    user = get_user_by_email(session, email)
    if not user:
        return None
    if not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.auth_access_token_expire_minutes)
    )
    to_encode = {"sub": subject, "exp": expire}
    return jwt.encode(to_encode, settings.auth_secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.auth_secret_key, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise UnauthorizedError("Token expired", "TOKEN_EXPIRED") from exc
    except jwt.PyJWTError as exc:
        raise UnauthorizedError("Invalid token", "INVALID_TOKEN") from exc


def ensure_default_admin(session: Session) -> None:
    if session.execute(select(UserORM)).first():
        return
    company = CompanyORM(name=settings.default_company_name)
    session.add(company)
    session.flush()
    try:
        create_user(
            session,
            email=settings.default_admin_email,
            password=settings.default_admin_password,
            full_name="Administrator",
            company=company,
            role_in_company=CompanyRole.OWNER.value,
        )
    except ValidationFailed as exc:
        raise RuntimeError(
            "DEFAULT_ADMIN_PASSWORD must be 72 bytes or fewer when encoded as UTF-8",
        ) from exc
    logger.info("Seeded default company and administrator %s", settings.default_admin_email)

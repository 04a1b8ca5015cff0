"""Authentication client.

`AuthClient` plays the role of the hosted identity service: it owns the
email/password credentials, hashes passwords with passlib and issues
signed JWT access tokens. Profile data lives in the `users` table and
is handled by `UserRepository`; the two share the uid returned by
`create_user`.
"""

import logging
from datetime import datetime, timedelta, timezone

import jwt
from passlib.context import CryptContext
from sqlmodel import Session, select

from . import models
from .errors import InvalidCredentialsError, NotFoundError

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

logger = logging.getLogger("academic_tracker.auth")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthClient:
    """Credential store and token issuer backed by its own engine."""
    def __init__(self, engine, secret: str, algorithm: str = "HS256", expire_hours: int = 24):
        self.engine = engine
        self.secret = secret
        self.algorithm = algorithm
        self.expire_hours = expire_hours

    @classmethod
    def from_settings(cls, engine, settings) -> "AuthClient":
        return cls(engine, settings.JWT_SECRET, settings.JWT_ALGORITHM, settings.JWT_EXPIRE_HOURS)

    def _get_by_email(self, session: Session, email: str):
        stmt = select(models.Credential).where(models.Credential.email == email)
        return session.exec(stmt).first()

    def create_user(self, email: str, password: str) -> str:
        """Register a credential and return its uid."""
        email = normalize_email(email)
        if not email or "@" not in email:
            raise ValueError("a valid email is required")
        if not password:
            raise ValueError("password cannot be empty")
        with Session(self.engine) as session:
            if self._get_by_email(session, email):
                raise ValueError(f"email already registered: {email}")
            cred = models.Credential(email=email, password_hash=PWD_CTX.hash(password))
            session.add(cred)
            session.commit()
            session.refresh(cred)
            logger.info("credential_created uid=%s", cred.uid)
            return cred.uid

    def sign_in(self, email: str, password: str) -> str:
        """Verify credentials and return the uid.

        Unknown email, wrong password and disabled accounts all raise the
        same `InvalidCredentialsError` so callers cannot tell which emails exist.
        """
        with Session(self.engine) as session:
            cred = self._get_by_email(session, normalize_email(email))
            if not cred or cred.disabled:
                raise InvalidCredentialsError()
            if not PWD_CTX.verify(password, cred.password_hash):
                raise InvalidCredentialsError()
            return cred.uid

    def change_password(self, uid: str, current_password: str, new_password: str) -> None:
        if not current_password:
            raise ValueError("Current password cannot be empty")
        if not new_password:
            raise ValueError("New password cannot be empty")
        if current_password == new_password:
            raise ValueError("New password must be different from current password")
        with Session(self.engine) as session:
            cred = session.get(models.Credential, uid)
            if not cred:
                raise NotFoundError("account not found")
            if not PWD_CTX.verify(current_password, cred.password_hash):
                raise InvalidCredentialsError("Current password is incorrect")
            cred.password_hash = PWD_CTX.hash(new_password)
            cred.password_changed_at = models.utcnow()
            session.add(cred)
            session.commit()

    def set_disabled(self, uid: str, disabled: bool) -> None:
        with Session(self.engine) as session:
            cred = session.get(models.Credential, uid)
            if not cred:
                raise NotFoundError("account not found")
            cred.disabled = disabled
            session.add(cred)
            session.commit()

    def delete_user(self, uid: str) -> None:
        with Session(self.engine) as session:
            cred = session.get(models.Credential, uid)
            if cred:
                session.delete(cred)
                session.commit()

    def issue_token(self, uid: str, role: str) -> str:
        expire = datetime.now(timezone.utc) + timedelta(hours=self.expire_hours)
        payload = {"uid": uid, "role": role, "exp": int(expire.timestamp())}
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode_token(self, token: str) -> dict:
        """Decode and verify a token, raising `InvalidCredentialsError` on failure."""
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise InvalidCredentialsError("token expired")
        except jwt.PyJWTError:
            raise InvalidCredentialsError("invalid token")

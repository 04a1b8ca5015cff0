"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    DATABASE_URL: str
    SCHOOL_DOMAIN: str
    LOGIN_MAX_ATTEMPTS: int
    LOGIN_LOCKOUT_MINUTES: int
    LOGIN_ATTEMPT_RESET_MINUTES: int
    MAX_UPLOAD_BYTES: int

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'app.db'}")
        self.SCHOOL_DOMAIN = os.getenv("SCHOOL_DOMAIN", "sjp2cd.edu.ph")
        self.LOGIN_MAX_ATTEMPTS = int(os.getenv("LOGIN_MAX_ATTEMPTS", "5"))
        self.LOGIN_LOCKOUT_MINUTES = int(os.getenv("LOGIN_LOCKOUT_MINUTES", "30"))
        self.LOGIN_ATTEMPT_RESET_MINUTES = int(os.getenv("LOGIN_ATTEMPT_RESET_MINUTES", "15"))
        self.MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(2 * 1024 * 1024)))  # 2 MB roster files
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.LOGIN_MAX_ATTEMPTS < 1:
            raise RuntimeError("LOGIN_MAX_ATTEMPTS must be at least 1")
        if not self.SCHOOL_DOMAIN or "@" in self.SCHOOL_DOMAIN:
            raise RuntimeError("SCHOOL_DOMAIN must be a bare domain name")


settings = Settings()

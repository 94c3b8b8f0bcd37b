"""Authentication: passwords, bearer tokens, API keys and the admin token.

- Passwords are hashed with bcrypt.
- Sessions are stateless HS256 JWTs passed as `Authorization: Bearer <token>`.
- Developer API keys (`rk_...`) are sent as `X-API-Key`; only their SHA-256 is stored.
- Admin endpoints expect `X-Admin-Token` matching ADMIN_TOKEN.
"""

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from fastapi import Depends, Header
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

import config
from database import get_db
from errors import AppError
from models import ApiKey, PasswordResetToken, User

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "rk_"
BCRYPT_MAX_BYTES = 72

bearer_scheme = HTTPBearer(auto_error=False)
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


# =============================================================================
# PASSWORDS
# =============================================================================

def validate_password(password: str) -> None:
    if len(password) < config.PASSWORD_MIN_LENGTH:
        raise AppError(
            "PASSWORD_VALIDATION_ERROR",
            f"Password must be at least {config.PASSWORD_MIN_LENGTH} characters long.",
        )
    if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise AppError(
            "PASSWORD_VALIDATION_ERROR",
            f"Password must be at most {BCRYPT_MAX_BYTES} bytes long.",
        )


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def authenticate(db: Session, email: str, password: str) -> User:
    """
    Check credentials and apply the lockout policy.

    Unknown emails and wrong passwords produce the same error. After
    MAX_FAILED_LOGINS consecutive failures the account is locked for
    LOCKOUT_MINUTES.
    """
    user = db.query(User).filter(User.email == email).first()
    now = datetime.utcnow()

    if not user:
        raise AppError("INVALID_CREDENTIALS")

    if user.account_locked_until and user.account_locked_until > now:
        raise AppError("ACCOUNT_LOCKED", details={"locked_until": user.account_locked_until.isoformat()})

    if not verify_password(password, user.password_hash):
        user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
        if user.failed_login_attempts >= config.MAX_FAILED_LOGINS:
            user.account_locked_until = now + timedelta(minutes=config.LOCKOUT_MINUTES)
            user.failed_login_attempts = 0
            db.commit()
            logger.warning(f"Account {user.id} locked after repeated failed logins")
            raise AppError("ACCOUNT_LOCKED", details={"locked_until": user.account_locked_until.isoformat()})
        db.commit()
        raise AppError("INVALID_CREDENTIALS")

    user.failed_login_attempts = 0
    user.account_locked_until = None
    user.last_login_at = now
    db.commit()
    return user


def create_reset_token(db: Session, user: User) -> str:
    """Issue a single-use reset token; only its hash is stored."""
    token = secrets.token_urlsafe(32)
    db.add(PasswordResetToken(
        user_id=user.id,
        token_hash=hashlib.sha256(token.encode()).hexdigest(),
        expires_at=datetime.utcnow() + timedelta(minutes=config.RESET_TOKEN_TTL_MINUTES),
    ))
    db.commit()
    return token


def reset_password(db: Session, token: str, new_password: str) -> User:
    record = db.query(PasswordResetToken).filter(
        PasswordResetToken.token_hash == hashlib.sha256(token.encode()).hexdigest()
    ).first()
    if record is None or record.used_at is not None:
        raise AppError("INVALID_TOKEN")
    if record.expires_at <= datetime.utcnow():
        raise AppError("TOKEN_EXPIRED")

    validate_password(new_password)
    user = db.get(User, record.user_id)
    user.password_hash = hash_password(new_password)
    user.failed_login_attempts = 0
    user.account_locked_until = None
    record.used_at = datetime.utcnow()
    db.commit()
    return user


# =============================================================================
# BEARER TOKENS
# =============================================================================

def create_access_token(user_id: int) -> tuple[str, datetime]:
    """Return (token, expires_at)."""
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=config.JWT_EXPIRATION_HOURS)
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": expires_at,
        "type": "access",
    }
    token = jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)
    return token, expires_at


def decode_access_token(token: str) -> int:
    """Return the user id inside a valid token."""
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AppError("SESSION_EXPIRED")
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected bearer token: {e}")
        raise AppError("UNAUTHORIZED", "Invalid authentication token.")

    try:
        return int(payload["sub"])
    except (KeyError, ValueError):
        raise AppError("UNAUTHORIZED", "Invalid authentication token.")


def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User | None:
    """Resolve the caller when a bearer token is present. A bad token is still an error."""
    if credentials is None:
        return None
    user_id = decode_access_token(credentials.credentials)
    user = db.get(User, user_id)
    if not user:
        raise AppError("UNAUTHORIZED", "Account no longer exists.")
    return user


def get_current_user(user: User | None = Depends(get_optional_user)) -> User:
    if user is None:
        raise AppError("UNAUTHORIZED")
    return user


# =============================================================================
# API KEYS
# =============================================================================

def generate_api_key() -> tuple[str, str]:
    """Generate a new API key and its hash.

    Returns:
        Tuple of (plaintext_key, key_hash)
    """
    plaintext_key = f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"
    return plaintext_key, hash_api_key(plaintext_key)


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()


def get_api_key(
    raw_key: str | None = Depends(api_key_header),
    db: Session = Depends(get_db),
) -> ApiKey:
    """Resolve X-API-Key to an active, unexpired key."""
    if not raw_key:
        raise AppError("UNAUTHORIZED", "API key required. Send it in the X-API-Key header.")
    if not raw_key.startswith(API_KEY_PREFIX):
        raise AppError("UNAUTHORIZED", "Invalid API key.")

    api_key = db.query(ApiKey).filter(ApiKey.key_hash == hash_api_key(raw_key)).first()
    if not api_key or not api_key.is_active:
        raise AppError("UNAUTHORIZED", "Invalid API key.")
    if api_key.expires_at and api_key.expires_at <= datetime.utcnow():
        raise AppError("UNAUTHORIZED", "API key has expired.")
    return api_key


# =============================================================================
# ADMIN
# =============================================================================

def require_admin(x_admin_token: str | None = Header(None, alias="X-Admin-Token")) -> None:
    expected = config.ADMIN_TOKEN
    if not expected or not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise AppError("FORBIDDEN", "Admin access required.")

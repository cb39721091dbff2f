"""
auth/tokens.py -- JWT issuance/verification and password hashing.

Security design decisions:
  JWT: python-jose with HS512. Two independent token classes:
       access  -- short-lived, signed with ACCESS_TOKEN_SECRET, presented as
                  a Bearer token on protected routes and reused as the OAuth
                  linking state.
       refresh -- long-lived, signed with REFRESH_TOKEN_SECRET, only accepted
                  by POST /auth/refresh to mint a new access token.
       Both carry {id, iat, exp}. Because the secrets differ, a token of one
       class fails signature verification when presented as the other [T1].

  Verification never raises for business reasons. verify_token() returns a
       TokenCheck carrying either the claims or one VerifyFailure kind. The
       kind is for server-side logs only; clients get generic messages so the
       API is not an oracle on token structure.

  Passwords: bcrypt used directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered [C1].

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import IdentityStore

logger = logging.getLogger("forge.auth.tokens")

ALGORITHM = "HS512"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps passwords at
    128 characters, and the truncation is accepted as a known limitation.
    """
    return bcrypt.hashpw(plain.encode("utf-8")[:72], bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        # Corrupt or non-bcrypt hash in the DB -- treat as a mismatch.
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones [C1].
_DUMMY_HASH: str = hash_password("forge_timing_dummy")


def authenticate_user(store: IdentityStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the account exists or has a password:
    - Unknown email or OAuth-only account: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the User (with roles) on success, None on any failure, including
    soft-deleted accounts.
    """
    user = store.find_user_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if user.is_deleted:
        return None
    return user


# ---------------------------------------------------------------------------
# Verification result
# ---------------------------------------------------------------------------


class VerifyFailure(str, Enum):
    EXPIRED = "expired"
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    INVALID_PAYLOAD = "invalid_payload"


@dataclass(frozen=True)
class TokenCheck:
    """Tagged result of verify_token(): exactly one of claims / failure is set."""

    claims: dict | None = None
    failure: VerifyFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def subject(self) -> str | None:
        return self.claims["id"] if self.claims is not None else None


def _encode(subject_id: str, secret: str, lifetime: timedelta, now: datetime | None = None) -> str:
    issued = now or datetime.now(timezone.utc)
    payload = {
        "id": subject_id,
        "iat": int(issued.timestamp()),
        "exp": int((issued + lifetime).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def verify_token(token: str, secret: str) -> TokenCheck:
    """Verify a token against a secret and classify any failure.

    Order of checks:
      1. Structure -- the header and claims must decode without a key.
         Anything that is not a well-formed JWS is MALFORMED.
      2. Signature and algorithm -- checked by jose before claims, so a token
         signed with another secret is BAD_SIGNATURE even when also expired.
      3. Expiry -- EXPIRED at or after exp.
      4. Payload -- claims must carry a string "id"; anything else was minted
         for a different purpose and is INVALID_PAYLOAD.
    """
    try:
        jwt.get_unverified_header(token)
        jwt.get_unverified_claims(token)
    except JWTError:
        return TokenCheck(failure=VerifyFailure.MALFORMED)

    try:
        claims = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        return TokenCheck(failure=VerifyFailure.EXPIRED)
    except JWTClaimsError:
        # Signature was fine; a registered claim (iat, nbf, ...) is unusable.
        return TokenCheck(failure=VerifyFailure.INVALID_PAYLOAD)
    except JWTError:
        return TokenCheck(failure=VerifyFailure.BAD_SIGNATURE)

    # jose accepts exp == now; a token is already dead at its expiry instant.
    exp = claims.get("exp")
    if isinstance(exp, (int, float)) and exp <= datetime.now(timezone.utc).timestamp():
        return TokenCheck(failure=VerifyFailure.EXPIRED)

    subject = claims.get("id")
    if not isinstance(subject, str) or not subject:
        return TokenCheck(failure=VerifyFailure.INVALID_PAYLOAD)
    return TokenCheck(claims=claims)


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Issues and verifies the two token classes.

    Built once at startup from Settings and stored on app.state.tokens.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_lifetime: int = 15 * 60,
        refresh_lifetime: int = 7 * 24 * 3600,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("Access and refresh tokens need distinct secrets.")
        self.access_secret = access_secret
        self.refresh_secret = refresh_secret
        self.access_lifetime = timedelta(seconds=access_lifetime)
        self.refresh_lifetime = timedelta(seconds=refresh_lifetime)

    @classmethod
    def from_settings(cls, settings) -> TokenService:
        return cls(
            access_secret=settings.access_token_secret,
            refresh_secret=settings.refresh_token_secret,
            access_lifetime=settings.access_token_expire_seconds,
            refresh_lifetime=settings.refresh_token_expire_seconds,
        )

    def issue_access(self, subject_id: str, now: datetime | None = None) -> str:
        return _encode(subject_id, self.access_secret, self.access_lifetime, now)

    def issue_refresh(self, subject_id: str, now: datetime | None = None) -> str:
        return _encode(subject_id, self.refresh_secret, self.refresh_lifetime, now)

    def verify_access(self, token: str) -> TokenCheck:
        return verify_token(token, self.access_secret)

    def verify_refresh(self, token: str) -> TokenCheck:
        return verify_token(token, self.refresh_secret)

"""Security utilities - signed refresh token codec, identifiers, context fingerprints"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Protocol
import hashlib
import hmac
import secrets

from jose import JWTError, jwt

from refresh_guard.config import Settings
from refresh_guard.core.exceptions import TokenDecodeError

REFRESH_TOKEN_TYPE = "refresh"


@dataclass(frozen=True)
class RefreshClaims:
    """Claims the rotation engine needs from a verified refresh token"""
    user_id: int
    token_id: str
    family_id: str


class TokenCodec(Protocol):
    def encode(
        self,
        user_id: int,
        token_id: str,
        family_id: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> str: ...

    def decode(self, raw: str) -> RefreshClaims: ...


class JwtTokenCodec:
    """
    Sign and verify refresh tokens as JWS compact tokens.

    Several signing keys may be configured at once, keyed by ``kid``; new
    tokens are always signed with ``active_kid``. Expiry is deliberately not
    checked here: the stored record owns expiry so an expired credential can
    still be matched to its row and revoked.
    """

    def __init__(
        self,
        keys: Dict[str, str],
        active_kid: str,
        *,
        algorithm: str = "HS256",
        issuer: str,
        audience: str,
    ) -> None:
        if active_kid not in keys:
            raise ValueError(f"Signing key '{active_kid}' is not configured")
        if algorithm.lower() == "none":
            raise ValueError("Unsigned tokens are not supported")
        self._keys = dict(keys)
        self._active_kid = active_kid
        self._algorithm = algorithm
        self._issuer = issuer
        self._audience = audience

    @classmethod
    def from_settings(cls, settings: Settings) -> "JwtTokenCodec":
        return cls(
            {settings.JWT_KEY_ID: settings.SECRET_KEY},
            settings.JWT_KEY_ID,
            algorithm=settings.ALGORITHM,
            issuer=settings.JWT_ISSUER,
            audience=settings.JWT_AUDIENCE,
        )

    def encode(
        self,
        user_id: int,
        token_id: str,
        family_id: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> str:
        """
        Create a signed refresh token

        Args:
            user_id: Owning principal
            token_id: Unique token identifier (jti)
            family_id: Lineage identifier shared with ancestors
            issued_at: Issue instant
            expires_at: Expiry instant

        Returns:
            str: Encoded JWS
        """
        claims = {
            "iss": self._issuer,
            "aud": self._audience,
            "sub": str(user_id),
            "jti": token_id,
            "fam": family_id,
            "typ": REFRESH_TOKEN_TYPE,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return jwt.encode(
            claims,
            self._keys[self._active_kid],
            algorithm=self._algorithm,
            headers={"kid": self._active_kid},
        )

    def decode(self, raw: str) -> RefreshClaims:
        """
        Verify and unpack a refresh token

        Raises:
            TokenDecodeError: On any signature, structure or claim problem.
        """
        try:
            header = jwt.get_unverified_header(raw)
        except JWTError as exc:
            raise TokenDecodeError("malformed token") from exc

        kid = header.get("kid")
        if not isinstance(kid, str) or kid not in self._keys:
            raise TokenDecodeError("unknown signing key")

        try:
            # require_exp would switch verify_exp back on; presence of exp is checked below.
            payload = jwt.decode(
                raw,
                self._keys[kid],
                algorithms=[self._algorithm],
                audience=self._audience,
                issuer=self._issuer,
                options={"verify_exp": False, "require_iat": True},
            )
        except JWTError as exc:
            raise TokenDecodeError("token verification failed") from exc

        if payload.get("typ") != REFRESH_TOKEN_TYPE:
            raise TokenDecodeError("not a refresh token")
        exp = payload.get("exp")
        if not isinstance(exp, int) or isinstance(exp, bool):
            raise TokenDecodeError("missing expiry")

        token_id = payload.get("jti")
        family_id = payload.get("fam")
        if not isinstance(token_id, str) or not token_id:
            raise TokenDecodeError("missing jti")
        if not isinstance(family_id, str) or not family_id:
            raise TokenDecodeError("missing family")
        try:
            user_id = int(payload.get("sub"))
        except (TypeError, ValueError) as exc:
            raise TokenDecodeError("invalid subject") from exc

        return RefreshClaims(user_id=user_id, token_id=token_id, family_id=family_id)


def new_token_id() -> str:
    """Collision-resistant random identifier for tokens and families"""
    return secrets.token_urlsafe(32)


def fingerprint(*parts: str) -> str:
    """SHA-256 over unit-separator-joined parts"""
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


def fingerprints_match(expected: Optional[str], presented: str) -> bool:
    if expected is None:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))

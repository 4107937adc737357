"""
Token service

Issues and verifies signed identity tokens (HS256 JWTs). A token carries only
who the caller is, never what they may do: roles are looked up per request.
Expiry is the only way a token stops being valid.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from errors import ExpiredTokenError, InvalidTokenError

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=1)


class TokenService:
    def __init__(self, secret: str, ttl: timedelta = DEFAULT_TTL, algorithm: str = "HS256"):
        self._secret = secret
        self.ttl = ttl
        self.algorithm = algorithm

    def issue(self, claims: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        to_encode = claims.copy()
        expire = datetime.now(timezone.utc) + (expires_delta if expires_delta is not None else self.ttl)
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, self._secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Dict[str, Any]:
        """Return the claims a token was issued with.

        Raises ExpiredTokenError once the embedded expiry has passed and
        InvalidTokenError for anything that isn't a token signed with our
        secret.
        """
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise ExpiredTokenError()
        except JWTError as exc:
            logger.warning("Token verification failed: %s", exc)
            raise InvalidTokenError()
        payload.pop("exp", None)
        return payload

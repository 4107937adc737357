"""
Access control gate

A gated request runs through an ordered list of rules. Each rule looks at the
request context, may enrich it (token claims, the stored user record) and
returns a Decision. The first denial stops the chain and becomes the error
response.

The role is always read from the users collection, not from the token, so a
role change applies on the caller's very next request.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

from fastapi import Depends, Request
from pymongo.collection import Collection
from pymongo.database import Database

from errors import AuthError, ForbiddenError, ValidationError
from schemas import normalize_email
from tokens import TokenService

logger = logging.getLogger(__name__)

BEARER_PREFIX = "bearer "

ROLES = ("user", "moderator", "admin")
ADMIN = frozenset({"admin"})
MODERATOR_OR_ADMIN = frozenset({"moderator", "admin"})


@dataclass
class AccessContext:
    request: Request
    tokens: TokenService
    users: Collection
    token: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)
    user: Optional[Dict[str, Any]] = None

    @property
    def email(self) -> Optional[str]:
        return normalize_email(self.claims.get("email"))

    @property
    def role(self) -> Optional[str]:
        return self.user.get("role") if self.user else None


@dataclass(frozen=True)
class Decision:
    allowed: bool
    status: int = 200
    reason: str = ""


ALLOW = Decision(True)


def deny(status: int, reason: str) -> Decision:
    return Decision(False, status, reason)


class AccessRule:
    def check(self, ctx: AccessContext) -> Decision:
        raise NotImplementedError


class BearerTokenPresent(AccessRule):
    def check(self, ctx: AccessContext) -> Decision:
        header = ctx.request.headers.get("Authorization", "")
        if not header.lower().startswith(BEARER_PREFIX):
            return deny(401, "Unauthorized access: No token provided")
        token = header[len(BEARER_PREFIX):].strip()
        if not token:
            return deny(401, "Unauthorized access: No token provided")
        ctx.token = token
        return ALLOW


class TokenVerified(AccessRule):
    def check(self, ctx: AccessContext) -> Decision:
        try:
            claims = ctx.tokens.verify(ctx.token)
        except AuthError as exc:
            return deny(401, exc.message)
        if not claims.get("email"):
            return deny(401, "Unauthorized access: Invalid token")
        ctx.claims = claims
        return ALLOW


class UserResolved(AccessRule):
    """Load the caller's stored user record. No record means no role at all."""

    def check(self, ctx: AccessContext) -> Decision:
        ctx.user = ctx.users.find_one({"email": ctx.email})
        if not ctx.user:
            return deny(403, "Forbidden access: User not found")
        return ALLOW


class RoleRequired(AccessRule):
    def __init__(self, roles: FrozenSet[str], reason: str):
        self.roles = roles
        self.reason = reason

    def check(self, ctx: AccessContext) -> Decision:
        if ctx.role not in self.roles:
            return deny(403, self.reason)
        return ALLOW


class SelfMatch(AccessRule):
    """The email named in the query string must be the caller's own."""

    def __init__(self, param: str = "email"):
        self.param = param

    def check(self, ctx: AccessContext) -> Decision:
        supplied = ctx.request.query_params.get(self.param)
        if not supplied:
            return deny(400, "Email parameter is required.")
        if normalize_email(supplied) != ctx.email:
            return deny(403, "Forbidden: Email mismatch.")
        return ALLOW


_ERRORS = {400: ValidationError, 401: AuthError, 403: ForbiddenError}


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_tokens(request: Request) -> TokenService:
    return request.app.state.tokens


class AccessGate:
    """FastAPI dependency running a fixed sequence of rules."""

    def __init__(self, *rules: AccessRule):
        self.rules: List[AccessRule] = list(rules)

    def evaluate(self, ctx: AccessContext) -> Decision:
        for rule in self.rules:
            decision = rule.check(ctx)
            if not decision.allowed:
                return decision
        return ALLOW

    def __call__(
        self,
        request: Request,
        db: Database = Depends(get_db),
        tokens: TokenService = Depends(get_tokens),
    ) -> AccessContext:
        ctx = AccessContext(request=request, tokens=tokens, users=db["users"])
        decision = self.evaluate(ctx)
        if not decision.allowed:
            logger.info(
                "Access denied on %s %s (%s): %s",
                request.method, request.url.path, ctx.email or "anonymous", decision.reason,
            )
            raise _ERRORS[decision.status](decision.reason)
        return ctx


def require_owner(ctx: AccessContext, owner_email: Optional[str], message: str) -> None:
    if not owner_email or normalize_email(owner_email) != ctx.email:
        raise ForbiddenError(message)


authenticated = AccessGate(BearerTokenPresent(), TokenVerified())
self_service = AccessGate(BearerTokenPresent(), TokenVerified(), SelfMatch("email"))
moderator_only = AccessGate(
    BearerTokenPresent(),
    TokenVerified(),
    UserResolved(),
    RoleRequired(MODERATOR_OR_ADMIN, "Forbidden access: Moderator or Admin required"),
)
admin_only = AccessGate(
    BearerTokenPresent(),
    TokenVerified(),
    UserResolved(),
    RoleRequired(ADMIN, "Forbidden access: Admin required"),
)

"""
Bearer token authentication and billing authorization.

A request is authorized for a set of organisations when its token either
carries an admin scope or grants billing access to every one of them.
Tokens arrive as ``Authorization: bearer <token>`` or in an
``authorization`` cookie.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence

import jwt
from starlette.requests import Request

from paas_billing.core.errors import AuthError

logger = logging.getLogger("paas_billing")

UNAUTHORIZED_MESSAGE = "you need to be billing_manager or an administrator to retrieve the billing data"


def extract_bearer_token(request: Request) -> Optional[str]:
    """Token from the Authorization header, falling back to the cookie."""
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    cookie = request.cookies.get("authorization", "")
    scheme, _, token = cookie.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return cookie.strip() or None


class Authorizer(ABC):
    @abstractmethod
    def admin(self) -> bool:
        ...

    @abstractmethod
    def has_billing_access(self, org_guids: Sequence[str]) -> bool:
        ...


class Authenticator(ABC):
    @abstractmethod
    def authorizer(self, token: str) -> Authorizer:
        """Authorizer for ``token``. Raises AuthError when it cannot be verified."""


class TokenAuthorizer(Authorizer):
    """Decisions from verified token claims."""

    def __init__(self, scopes: Iterable[str], billing_org_guids: Iterable[str], admin_scopes: Iterable[str]):
        self.scopes = set(scopes)
        self.billing_org_guids = set(billing_org_guids)
        self.admin_scopes = set(admin_scopes)

    def admin(self) -> bool:
        return bool(self.scopes & self.admin_scopes)

    def has_billing_access(self, org_guids: Sequence[str]) -> bool:
        # An empty org filter means every org, which only admins may see
        if not org_guids:
            return False
        return all(guid in self.billing_org_guids for guid in org_guids)


def _claim_list(claims: dict, name: str) -> List[str]:
    value = claims.get(name) or []
    if isinstance(value, str):
        return value.split()
    return [str(item) for item in value]


class JWTAuthenticator(Authenticator):
    def __init__(self, secret: str, algorithms: Sequence[str], admin_scopes: Sequence[str], audience: Optional[str] = None):
        self.secret = secret
        self.algorithms = list(algorithms)
        self.admin_scopes = list(admin_scopes)
        self.audience = audience

    def authorizer(self, token: str) -> Authorizer:
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=self.algorithms,
                audience=self.audience,
                options={"verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            raise AuthError("invalid credentials: token expired") from None
        except jwt.InvalidTokenError as exc:
            logger.debug("auth.invalid_token", extra={"reason": str(exc)})
            raise AuthError("invalid credentials") from None
        return TokenAuthorizer(
            scopes=_claim_list(claims, "scope"),
            billing_org_guids=_claim_list(claims, "billing_org_guids"),
            admin_scopes=self.admin_scopes,
        )


class StaticAuthenticator(Authenticator):
    """Fixed token -> authorizer table; used by tests and local development."""

    def __init__(self, authorizers: Dict[str, Authorizer]):
        self.authorizers = dict(authorizers)

    def authorizer(self, token: str) -> Authorizer:
        try:
            return self.authorizers[token]
        except KeyError:
            raise AuthError("invalid credentials") from None


class DenyAllAuthenticator(Authenticator):
    """Used when no token verification is configured."""

    def authorizer(self, token: str) -> Authorizer:
        raise AuthError("invalid credentials: token verification is not configured")


def _authorizer_for(request: Request, authenticator: Authenticator) -> Authorizer:
    token = extract_bearer_token(request)
    if not token:
        raise AuthError("no access token provided")
    return authenticator.authorizer(token)


def require_billing_access(request: Request, authenticator: Authenticator, org_guids: Sequence[str]) -> Authorizer:
    authorizer = _authorizer_for(request, authenticator)
    if authorizer.admin() or authorizer.has_billing_access(org_guids):
        return authorizer
    logger.info("auth.denied", extra={"org_guids": list(org_guids)})
    raise AuthError(UNAUTHORIZED_MESSAGE)


def require_admin(request: Request, authenticator: Authenticator) -> Authorizer:
    authorizer = _authorizer_for(request, authenticator)
    if not authorizer.admin():
        logger.info("auth.denied", extra={"admin_required": True})
        raise AuthError("you need to be an administrator to retrieve this data")
    return authorizer

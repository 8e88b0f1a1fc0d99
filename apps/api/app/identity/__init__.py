from app.identity.client import (
    HttpIdentityClient,
    IdentityClient,
    IdentityRecord,
    IdentityServiceError,
    IdentityServiceUnavailable,
    StubIdentityClient,
    get_identity_client,
)
from app.identity.models import AuthIdentity

__all__ = [
    "AuthIdentity",
    "HttpIdentityClient",
    "IdentityClient",
    "IdentityRecord",
    "IdentityServiceError",
    "IdentityServiceUnavailable",
    "StubIdentityClient",
    "get_identity_client",
]

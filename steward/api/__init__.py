"""HTTP API: action-keyed governance endpoint with bearer authentication."""

from steward.api.auth import AuthProvider, AuthResult, BearerTokenAuthProvider
from steward.api.handler import GovernanceRequest, parse_request_payload, to_json
from steward.api.server import GovernanceAPIServer, create_app

__all__ = [
    "AuthProvider",
    "AuthResult",
    "BearerTokenAuthProvider",
    "GovernanceAPIServer",
    "GovernanceRequest",
    "create_app",
    "parse_request_payload",
    "to_json",
]

"""Security module for EchoRelay.

This module provides:
- Registration key checks (X-Api-Key / Bearer)
- Client auth key checks for mobile clients
- Tunnel credential issuance
"""

from echorelay.security.apikey import (
    APIKeyAuthenticator,
    AuthResult,
    check_client_key,
    create_api_key_authenticator,
    extract_api_key,
)
from echorelay.security.credentials import (
    CredentialIssuer,
    CredentialStore,
    InMemoryCredentialStore,
    TunnelCredentials,
)

__all__ = [
    "APIKeyAuthenticator",
    "AuthResult",
    "check_client_key",
    "create_api_key_authenticator",
    "extract_api_key",
    "CredentialIssuer",
    "CredentialStore",
    "InMemoryCredentialStore",
    "TunnelCredentials",
]

from __future__ import annotations

import secrets
from collections.abc import Mapping
from dataclasses import dataclass

API_KEY_HEADER = "X-Api-Key"
AUTHORIZATION_HEADER = "Authorization"
CLIENT_AUTH_HEADER = "X-Laptop-Auth-Key"
CLIENT_AUTH_QUERY = "auth_key"


@dataclass
class AuthResult:
    allowed: bool
    reason: str


def extract_api_key(headers: Mapping[str, str]) -> str | None:
    """Registration key from ``X-Api-Key`` or ``Authorization: Bearer``."""
    key = headers.get(API_KEY_HEADER)
    if key:
        return key
    auth_header = headers.get(AUTHORIZATION_HEADER, "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def keys_match(provided: str | None, expected: str | None) -> bool:
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode(), expected.encode())


class APIKeyAuthenticator:
    """Checks the deployment-wide registration key."""

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    def check(self, headers: Mapping[str, str]) -> AuthResult:
        provided = extract_api_key(headers)
        if not provided:
            return AuthResult(allowed=False, reason="Missing API key")

        if not keys_match(provided, self._api_key):
            return AuthResult(allowed=False, reason="Invalid API key")

        return AuthResult(allowed=True, reason="Authenticated")


def check_client_key(provided: str | None, expected: str | None) -> AuthResult:
    """Compare a mobile client's ``X-Laptop-Auth-Key`` with the tunnel's current key."""
    if not expected:
        return AuthResult(allowed=False, reason="Tunnel auth key not registered yet")
    if not provided:
        return AuthResult(allowed=False, reason="Missing X-Laptop-Auth-Key header")
    if not keys_match(provided, expected):
        return AuthResult(allowed=False, reason="Invalid X-Laptop-Auth-Key header")
    return AuthResult(allowed=True, reason="Authenticated")


def create_api_key_authenticator(api_key: str) -> APIKeyAuthenticator:
    return APIKeyAuthenticator(api_key=api_key)

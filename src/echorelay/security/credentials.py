"""Tunnel credential issuance.

Registration mints a public tunnel id and a secret client auth key. The
credentials are kept server-side so that the WebSocket upgrade can check the
connection secret; nothing is written to the tunnel registry until the laptop
actually connects.

Restoring an existing tunnel id keeps the public URL stable and rotates the
secret: the previously issued key stops working immediately.
"""

from __future__ import annotations

import secrets
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger()

TUNNEL_ID_BYTES = 8
CLIENT_AUTH_KEY_BYTES = 32
DEFAULT_MAX_CREDENTIALS = 10_000
DEFAULT_UNCLAIMED_TTL = 86_400.0


@dataclass
class TunnelCredentials:
    """Credentials issued for one tunnel id."""

    tunnel_id: str
    client_auth_key: str
    name: str = "Laptop"
    is_restored: bool = False
    issued_at: float = field(default_factory=time.time)
    connected_at: float | None = None


class CredentialStore(ABC):
    """Storage for issued credentials, keyed by tunnel id."""

    @abstractmethod
    def get(self, tunnel_id: str) -> TunnelCredentials | None: ...

    @abstractmethod
    def put(self, credentials: TunnelCredentials) -> None: ...

    @abstractmethod
    def __contains__(self, tunnel_id: object) -> bool: ...

    @abstractmethod
    def __len__(self) -> int: ...


class InMemoryCredentialStore(CredentialStore):
    """Dict-backed store with bounded growth.

    Credentials never used to connect expire after ``unclaimed_ttl`` seconds.
    Above ``max_entries`` the oldest issued credentials are dropped.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_CREDENTIALS,
        unclaimed_ttl: float = DEFAULT_UNCLAIMED_TTL,
    ) -> None:
        self.max_entries = max_entries
        self.unclaimed_ttl = unclaimed_ttl
        self._credentials: OrderedDict[str, TunnelCredentials] = OrderedDict()

    def get(self, tunnel_id: str) -> TunnelCredentials | None:
        return self._credentials.get(tunnel_id)

    def put(self, credentials: TunnelCredentials) -> None:
        # Re-insert so a restore moves the id to the newest position
        self._credentials.pop(credentials.tunnel_id, None)
        self._credentials[credentials.tunnel_id] = credentials
        self.prune()

    def prune(self, now: float | None = None) -> int:
        """Drop expired unclaimed credentials, then the oldest beyond the cap."""
        now = time.time() if now is None else now
        expired = [
            tunnel_id
            for tunnel_id, credentials in self._credentials.items()
            if credentials.connected_at is None and now - credentials.issued_at > self.unclaimed_ttl
        ]
        for tunnel_id in expired:
            del self._credentials[tunnel_id]

        evicted = 0
        while len(self._credentials) > self.max_entries:
            self._credentials.popitem(last=False)
            evicted += 1

        if expired or evicted:
            logger.info(
                "Pruned tunnel credentials",
                expired=len(expired),
                evicted=evicted,
                remaining=len(self._credentials),
            )
        return len(expired) + evicted

    def __contains__(self, tunnel_id: object) -> bool:
        return tunnel_id in self._credentials

    def __len__(self) -> int:
        return len(self._credentials)


class CredentialIssuer:
    """Mints and validates tunnel credentials."""

    def __init__(self, store: CredentialStore | None = None) -> None:
        self._store = store if store is not None else InMemoryCredentialStore()

    @property
    def store(self) -> CredentialStore:
        return self._store

    def issue(self, name: str | None = None, tunnel_id: str | None = None) -> TunnelCredentials:
        """Issue credentials for a new tunnel, or rotate them for ``tunnel_id``."""
        name = name or "Laptop"

        if tunnel_id:
            credentials = TunnelCredentials(
                tunnel_id=tunnel_id,
                client_auth_key=self._new_key(),
                name=name,
                is_restored=True,
            )
            logger.info("Restoring tunnel", tunnel_id=tunnel_id, name=name)
        else:
            credentials = TunnelCredentials(
                tunnel_id=self._new_tunnel_id(),
                client_auth_key=self._new_key(),
                name=name,
            )
            logger.info("Creating new tunnel", tunnel_id=credentials.tunnel_id, name=name)

        self._store.put(credentials)
        return credentials

    def verify_connection_key(self, tunnel_id: str, provided: str | None) -> TunnelCredentials | None:
        """Return the credentials if ``provided`` is the key currently issued for ``tunnel_id``."""
        credentials = self._store.get(tunnel_id)
        if credentials is None or not provided:
            return None
        if not secrets.compare_digest(provided.encode(), credentials.client_auth_key.encode()):
            return None
        credentials.connected_at = time.time()
        return credentials

    def _new_tunnel_id(self) -> str:
        tunnel_id = secrets.token_hex(TUNNEL_ID_BYTES)
        while tunnel_id in self._store:
            tunnel_id = secrets.token_hex(TUNNEL_ID_BYTES)
        return tunnel_id

    def _new_key(self) -> str:
        return secrets.token_hex(CLIENT_AUTH_KEY_BYTES)

"""Tests for registration key checks and credential issuance."""

from __future__ import annotations

import re
from unittest.mock import patch

from echorelay.security.apikey import (
    APIKeyAuthenticator,
    check_client_key,
    extract_api_key,
    keys_match,
)
from echorelay.security.credentials import CredentialIssuer, InMemoryCredentialStore, TunnelCredentials


class TestExtractApiKey:
    def test_x_api_key_header(self) -> None:
        assert extract_api_key({"X-Api-Key": "abc"}) == "abc"

    def test_bearer_token(self) -> None:
        assert extract_api_key({"Authorization": "Bearer abc"}) == "abc"

    def test_x_api_key_wins(self) -> None:
        assert extract_api_key({"X-Api-Key": "one", "Authorization": "Bearer two"}) == "one"

    def test_other_scheme_ignored(self) -> None:
        assert extract_api_key({"Authorization": "Basic abc"}) is None

    def test_missing(self) -> None:
        assert extract_api_key({}) is None


class TestAPIKeyAuthenticator:
    def test_valid_key(self) -> None:
        result = APIKeyAuthenticator("secret").check({"X-Api-Key": "secret"})
        assert result.allowed is True

    def test_missing_key(self) -> None:
        result = APIKeyAuthenticator("secret").check({})
        assert result.allowed is False
        assert result.reason == "Missing API key"

    def test_wrong_key(self) -> None:
        result = APIKeyAuthenticator("secret").check({"Authorization": "Bearer nope"})
        assert result.allowed is False
        assert result.reason == "Invalid API key"

    def test_empty_configured_key_rejects_everything(self) -> None:
        assert APIKeyAuthenticator("").check({"X-Api-Key": ""}).allowed is False


class TestClientKey:
    def test_match(self) -> None:
        assert check_client_key("k", "k").allowed is True

    def test_mismatch(self) -> None:
        assert check_client_key("x", "k").allowed is False

    def test_missing(self) -> None:
        result = check_client_key(None, "k")
        assert result.allowed is False
        assert "Missing" in result.reason

    def test_no_expected_key(self) -> None:
        assert check_client_key("k", "").allowed is False

    def test_keys_match_requires_both(self) -> None:
        assert keys_match("", "") is False
        assert keys_match("a", None) is False


class TestCredentialIssuer:
    def test_issue_new(self) -> None:
        issuer = CredentialIssuer()
        creds = issuer.issue(name="Work")

        assert re.fullmatch(r"[0-9a-f]{16}", creds.tunnel_id)
        assert re.fullmatch(r"[0-9a-f]{64}", creds.client_auth_key)
        assert creds.name == "Work"
        assert creds.is_restored is False
        assert issuer.store.get(creds.tunnel_id) is creds

    def test_default_name(self) -> None:
        assert CredentialIssuer().issue().name == "Laptop"

    def test_fresh_ids_are_distinct(self) -> None:
        issuer = CredentialIssuer()
        ids = {issuer.issue().tunnel_id for _ in range(50)}
        assert len(ids) == 50

    def test_restore_keeps_id_and_rotates_key(self) -> None:
        issuer = CredentialIssuer()
        first = issuer.issue(tunnel_id="my-laptop")
        second = issuer.issue(tunnel_id="my-laptop")

        assert first.tunnel_id == second.tunnel_id == "my-laptop"
        assert second.is_restored is True
        assert first.client_auth_key != second.client_auth_key
        assert issuer.verify_connection_key("my-laptop", first.client_auth_key) is None
        assert issuer.verify_connection_key("my-laptop", second.client_auth_key) is second

    def test_collision_redraws_id(self) -> None:
        store = InMemoryCredentialStore()
        issuer = CredentialIssuer(store)
        taken = issuer.issue(tunnel_id="aaaaaaaaaaaaaaaa")

        with patch(
            "echorelay.security.credentials.secrets.token_hex",
            side_effect=["aaaaaaaaaaaaaaaa", "bbbbbbbbbbbbbbbb", "k" * 64],
        ):
            creds = issuer.issue()

        assert creds.tunnel_id == "bbbbbbbbbbbbbbbb"
        assert store.get(taken.tunnel_id) is taken
        assert len(store) == 2

    def test_verify_unknown_tunnel(self) -> None:
        assert CredentialIssuer().verify_connection_key("nope", "key") is None

    def test_verify_missing_key(self) -> None:
        issuer = CredentialIssuer()
        creds = issuer.issue()
        assert issuer.verify_connection_key(creds.tunnel_id, None) is None
        assert issuer.verify_connection_key(creds.tunnel_id, "") is None

    def test_verify_marks_credentials_connected(self) -> None:
        issuer = CredentialIssuer()
        creds = issuer.issue()
        assert creds.connected_at is None

        issuer.verify_connection_key(creds.tunnel_id, creds.client_auth_key)

        assert creds.connected_at is not None


class TestInMemoryCredentialStore:
    """Tests for bounded credential retention."""

    def test_unclaimed_credentials_expire(self) -> None:
        store = InMemoryCredentialStore(unclaimed_ttl=60.0)
        creds = TunnelCredentials(tunnel_id="t1", client_auth_key="k")
        store.put(creds)

        assert store.prune(now=creds.issued_at + 30) == 0
        assert "t1" in store

        assert store.prune(now=creds.issued_at + 61) == 1
        assert "t1" not in store
        assert store.get("t1") is None

    def test_connected_credentials_do_not_expire(self) -> None:
        store = InMemoryCredentialStore(unclaimed_ttl=60.0)
        creds = TunnelCredentials(tunnel_id="t1", client_auth_key="k")
        store.put(creds)
        creds.connected_at = creds.issued_at + 10

        assert store.prune(now=creds.issued_at + 1_000_000) == 0
        assert "t1" in store

    def test_oldest_dropped_beyond_cap(self) -> None:
        store = InMemoryCredentialStore(max_entries=2)
        for tunnel_id in ("t1", "t2", "t3"):
            store.put(TunnelCredentials(tunnel_id=tunnel_id, client_auth_key="k"))

        assert len(store) == 2
        assert "t1" not in store
        assert "t2" in store and "t3" in store

    def test_restore_does_not_grow_store(self) -> None:
        store = InMemoryCredentialStore(max_entries=2)
        issuer = CredentialIssuer(store)
        issuer.issue(tunnel_id="t1")
        issuer.issue(tunnel_id="t2")

        # Restoring t1 makes it the newest entry, so t2 goes first
        issuer.issue(tunnel_id="t1")
        issuer.issue(tunnel_id="t3")

        assert len(store) == 2
        assert "t1" in store
        assert "t2" not in store

    def test_issue_prunes_expired(self) -> None:
        store = InMemoryCredentialStore(unclaimed_ttl=60.0)
        stale = TunnelCredentials(tunnel_id="stale", client_auth_key="k")
        store.put(stale)
        stale.issued_at -= 120
        issuer = CredentialIssuer(store)

        issuer.issue(tunnel_id="fresh")

        assert "stale" not in store
        assert len(store) == 1

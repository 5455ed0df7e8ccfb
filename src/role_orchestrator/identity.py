"""Agent identities: secret issuance, hashing, authentication, and role gating."""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from typing import Any

from role_orchestrator.errors import AuthenticationError, InvalidRequest, NotFoundError, PermissionDenied
from role_orchestrator.models import (
    IDENTITY_ROLES,
    OWNER_ROLE,
    AgentIdentity,
    AgentPrincipal,
    CreatedIdentity,
)
from role_orchestrator.storage.base import IdentityStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "agent_"
HASH_SCHEME = "pbkdf2_sha256"
HASH_ITERATIONS = 200_000
OWNER_PRINCIPAL_ID = "owner"


def generate_agent_key() -> str:
    return f"{KEY_PREFIX}{secrets.token_hex(32)}"


def hash_agent_key(secret: str, *, iterations: int = HASH_ITERATIONS) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", secret.encode("utf-8"), salt.encode("ascii"), iterations)
    return f"{HASH_SCHEME}${iterations}${salt}${digest.hex()}"


def verify_agent_key(secret: str, encoded: str) -> bool:
    try:
        scheme, raw_iterations, salt, expected = encoded.split("$", 3)
        iterations = int(raw_iterations)
    except ValueError:
        return False
    if scheme != HASH_SCHEME:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", secret.encode("utf-8"), salt.encode("ascii"), iterations)
    return hmac.compare_digest(digest.hex(), expected)


class IdentityService:
    """Registry of agent identities backed by an ``IdentityStore``.

    Plaintext secrets exist only in the return value of ``create_identity``.
    ``authenticate`` checks every active identity's hash, so lookup cost grows
    with the number of agents; that is acceptable for a handful of agents.
    """

    def __init__(self, store: IdentityStore, *, owner_key: str = "") -> None:
        self.store = store
        self.owner_key = owner_key

    def create_identity(
        self,
        name: str,
        role: str,
        metadata: dict[str, Any] | None = None,
    ) -> CreatedIdentity:
        _require_identity_role(role)
        if not name.strip():
            raise InvalidRequest("Identity name must not be empty")
        secret = generate_agent_key()
        identity = self.store.insert_identity(
            name=name.strip(),
            role=role,
            credential_hash=hash_agent_key(secret),
            metadata=metadata or {},
        )
        logger.info("identity event=created identity_id=%s role=%s", identity.id, role)
        return CreatedIdentity(identity=identity, api_key=secret)

    def list_identities(self, *, active_only: bool = False) -> list[AgentIdentity]:
        return self.store.list_identities(active_only=active_only)

    def get_identity(self, identity_id: str) -> AgentIdentity:
        identity = self.store.get_identity(identity_id)
        if identity is None:
            raise NotFoundError(f"Identity {identity_id} not found")
        return identity

    def update_identity(
        self,
        identity_id: str,
        *,
        name: str | None = None,
        role: str | None = None,
        is_active: bool | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AgentIdentity:
        changes: dict[str, Any] = {}
        if name is not None:
            if not name.strip():
                raise InvalidRequest("Identity name must not be empty")
            changes["name"] = name.strip()
        if role is not None:
            _require_identity_role(role)
            changes["role"] = role
        if is_active is not None:
            changes["is_active"] = is_active
        if metadata is not None:
            changes["metadata"] = metadata
        if not changes:
            return self.get_identity(identity_id)
        updated = self.store.update_identity(identity_id, changes)
        if updated is None:
            raise NotFoundError(f"Identity {identity_id} not found")
        logger.info(
            "identity event=updated identity_id=%s fields=%s",
            identity_id,
            ",".join(sorted(changes)),
        )
        return updated

    def deactivate(self, identity_id: str) -> AgentIdentity:
        return self.update_identity(identity_id, is_active=False)

    def authenticate(self, secret: str | None) -> AgentPrincipal:
        if not secret:
            raise AuthenticationError("Missing agent key")
        if self.owner_key and hmac.compare_digest(secret, self.owner_key):
            return AgentPrincipal(id=OWNER_PRINCIPAL_ID, name="Owner", role=OWNER_ROLE)
        if not secret.startswith(KEY_PREFIX):
            raise AuthenticationError("Invalid agent key")
        for identity in self.store.list_identities(active_only=True):
            if verify_agent_key(secret, identity.credential_hash):
                return AgentPrincipal(
                    id=identity.id,
                    name=identity.name,
                    role=identity.role,
                    metadata=identity.metadata,
                )
        logger.warning("identity event=auth_failed")
        raise AuthenticationError("Invalid agent key")


def require_roles(principal: AgentPrincipal, *roles: str) -> AgentPrincipal:
    """Raise ``PermissionDenied`` unless the caller holds one of ``roles``; OWNER always passes."""
    if principal.role == OWNER_ROLE or principal.role in roles:
        return principal
    raise PermissionDenied(
        f"Role {principal.role} is not allowed here",
        details={"required": list(roles)},
    )


def _require_identity_role(role: str) -> None:
    if role not in IDENTITY_ROLES:
        raise InvalidRequest(f"Unknown identity role: {role}")

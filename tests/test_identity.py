from __future__ import annotations

import pytest

from role_orchestrator.errors import AuthenticationError, InvalidRequest, NotFoundError, PermissionDenied
from role_orchestrator.identity import (
    IdentityService,
    generate_agent_key,
    hash_agent_key,
    require_roles,
    verify_agent_key,
)
from role_orchestrator.models import AgentPrincipal
from role_orchestrator.storage import InMemoryStore

OWNER_KEY = "owner-only-key"


@pytest.fixture
def identities() -> IdentityService:
    return IdentityService(InMemoryStore(), owner_key=OWNER_KEY)


def test_generated_keys_are_prefixed_and_unique() -> None:
    first, second = generate_agent_key(), generate_agent_key()

    assert first.startswith("agent_")
    assert len(first) == len("agent_") + 64
    assert first != second


def test_hash_round_trip_uses_random_salt() -> None:
    secret = generate_agent_key()
    encoded = hash_agent_key(secret, iterations=1_000)

    assert encoded.startswith("pbkdf2_sha256$1000$")
    assert secret not in encoded
    assert verify_agent_key(secret, encoded)
    assert not verify_agent_key(secret + "x", encoded)
    assert hash_agent_key(secret, iterations=1_000) != encoded


def test_verify_rejects_malformed_hashes() -> None:
    assert not verify_agent_key("agent_x", "")
    assert not verify_agent_key("agent_x", "bcrypt$12$salt$digest")
    assert not verify_agent_key("agent_x", "pbkdf2_sha256$many$salt$digest")


def test_create_identity_returns_secret_once(identities: IdentityService) -> None:
    created = identities.create_identity("  Finance bot ", "FINANCE", {"team": "billing"})

    assert created.identity.name == "Finance bot"
    assert created.identity.role == "FINANCE"
    assert created.identity.metadata == {"team": "billing"}
    assert created.api_key.startswith("agent_")
    assert "credential_hash" not in created.identity.model_dump()
    assert created.api_key not in created.identity.credential_hash


def test_create_identity_validates_input(identities: IdentityService) -> None:
    with pytest.raises(InvalidRequest, match="Unknown identity role"):
        identities.create_identity("bot", "JANITOR")
    with pytest.raises(InvalidRequest, match="must not be empty"):
        identities.create_identity("   ", "SUPPORT")


def test_authenticate_agent_and_owner(identities: IdentityService) -> None:
    created = identities.create_identity("Support bot", "SUPPORT")

    principal = identities.authenticate(created.api_key)
    assert principal.id == created.identity.id
    assert principal.role == "SUPPORT"

    owner = identities.authenticate(OWNER_KEY)
    assert owner.role == "OWNER"
    assert owner.id == "owner"


@pytest.mark.parametrize("secret", [None, "", "not-an-agent-key", "agent_" + "0" * 64])
def test_authenticate_rejects_bad_keys(identities: IdentityService, secret: str | None) -> None:
    identities.create_identity("Support bot", "SUPPORT")

    with pytest.raises(AuthenticationError):
        identities.authenticate(secret)


def test_owner_key_is_disabled_when_unset() -> None:
    service = IdentityService(InMemoryStore())

    with pytest.raises(AuthenticationError):
        service.authenticate("anything")


def test_deactivated_identity_cannot_authenticate(identities: IdentityService) -> None:
    created = identities.create_identity("Pricing bot", "PRICING")

    deactivated = identities.deactivate(created.identity.id)

    assert deactivated.is_active is False
    assert identities.list_identities(active_only=True) == []
    assert len(identities.list_identities()) == 1
    with pytest.raises(AuthenticationError):
        identities.authenticate(created.api_key)


def test_update_identity(identities: IdentityService) -> None:
    created = identities.create_identity("Bot", "MARKETING")

    updated = identities.update_identity(created.identity.id, name="Campaign bot", role="LEADER")
    assert updated.name == "Campaign bot"
    assert updated.role == "LEADER"
    assert identities.authenticate(created.api_key).role == "LEADER"

    unchanged = identities.update_identity(created.identity.id)
    assert unchanged.name == "Campaign bot"

    with pytest.raises(InvalidRequest):
        identities.update_identity(created.identity.id, role="ROBOT")
    with pytest.raises(NotFoundError):
        identities.update_identity("missing", name="x")
    with pytest.raises(NotFoundError):
        identities.get_identity("missing")


def test_require_roles() -> None:
    leader = AgentPrincipal(id="a", name="Lead", role="LEADER")
    support = AgentPrincipal(id="b", name="Help", role="SUPPORT")
    owner = AgentPrincipal(id="owner", name="Owner", role="OWNER")

    assert require_roles(leader, "LEADER") is leader
    assert require_roles(owner, "LEADER") is owner
    with pytest.raises(PermissionDenied) as excinfo:
        require_roles(support, "LEADER", "FINANCE")
    assert excinfo.value.details == {"required": ["LEADER", "FINANCE"]}

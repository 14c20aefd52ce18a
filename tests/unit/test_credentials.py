"""Unit tests for credential resolution"""
import pytest
from datetime import datetime, timedelta, UTC
from typing import Callable

from cryptography.fernet import Fernet

from coordinator.core.credentials import CredentialResolver, encrypt_secret
from coordinator.core.errors import AgentNotFound, MissingCredential
from coordinator.core.state_manager import StateManager
from shared.enums import CredentialStatus
from shared.models import UserCredential

AGENT_ID = "agent-a"
USER_ID = "user-u"


@pytest.mark.unit
@pytest.mark.asyncio
class TestCredentialResolver:

    async def test_resolves_all_required_fields(
            self, seed_agent: Callable,
            credential_resolver: CredentialResolver) -> None:
        await seed_agent(required_credentials=["api_key", "workspace"])

        resolved = await credential_resolver.resolve_credentials(
            AGENT_ID, USER_ID)

        assert resolved == {
            "api_key": "secret-api_key",
            "workspace": "secret-workspace"
        }

    async def test_agent_without_requirements(
            self, seed_agent: Callable,
            credential_resolver: CredentialResolver) -> None:
        await seed_agent(required_credentials=[])

        assert await credential_resolver.resolve_credentials(
            AGENT_ID, USER_ID) == {}

    async def test_unknown_agent(self,
                                 credential_resolver: CredentialResolver
                                 ) -> None:
        with pytest.raises(AgentNotFound):
            await credential_resolver.resolve_credentials("ghost", USER_ID)

    async def test_missing_field_names_the_field(
            self, seed_agent: Callable,
            credential_resolver: CredentialResolver) -> None:
        await seed_agent(required_credentials=["api_key", "workspace"],
                         secrets={"api_key": "k"})

        with pytest.raises(MissingCredential) as exc_info:
            await credential_resolver.resolve_credentials(AGENT_ID, USER_ID)

        assert exc_info.value.field_name == "workspace"

    async def test_other_users_secret_is_not_used(
            self, seed_agent: Callable,
            credential_resolver: CredentialResolver) -> None:
        await seed_agent()

        with pytest.raises(MissingCredential):
            await credential_resolver.resolve_credentials(AGENT_ID, "someone")

    @pytest.mark.parametrize("status", [
        CredentialStatus.EXPIRED,
        CredentialStatus.REVOKED,
    ])
    async def test_inactive_credential(self, seed_agent: Callable,
                                       credential_resolver: CredentialResolver,
                                       state_manager: StateManager,
                                       fernet_key: str,
                                       status: CredentialStatus) -> None:
        await seed_agent()
        await state_manager.save_credential(
            UserCredential(user_id=USER_ID,
                           field_name="api_key",
                           encrypted_value=encrypt_secret(fernet_key, "k"),
                           status=status))

        with pytest.raises(MissingCredential):
            await credential_resolver.resolve_credentials(AGENT_ID, USER_ID)

    async def test_expired_by_time(self, seed_agent: Callable,
                                   credential_resolver: CredentialResolver,
                                   state_manager: StateManager,
                                   fernet_key: str) -> None:
        await seed_agent()
        now = datetime.now(UTC)
        await state_manager.save_credential(
            UserCredential(user_id=USER_ID,
                           field_name="api_key",
                           encrypted_value=encrypt_secret(fernet_key, "k"),
                           expires_at=now + timedelta(hours=1)))

        assert await credential_resolver.resolve_credentials(
            AGENT_ID, USER_ID, now=now) == {"api_key": "k"}
        with pytest.raises(MissingCredential):
            await credential_resolver.resolve_credentials(
                AGENT_ID, USER_ID, now=now + timedelta(hours=2))

    async def test_wrong_key_fails_closed(self, seed_agent: Callable,
                                          state_manager: StateManager) -> None:
        await seed_agent()
        resolver = CredentialResolver(state_manager,
                                      Fernet.generate_key().decode())

        with pytest.raises(MissingCredential):
            await resolver.resolve_credentials(AGENT_ID, USER_ID)

    async def test_no_key_fails_closed(self, seed_agent: Callable,
                                       state_manager: StateManager) -> None:
        await seed_agent()
        resolver = CredentialResolver(state_manager, None)

        with pytest.raises(MissingCredential):
            await resolver.resolve_credentials(AGENT_ID, USER_ID)

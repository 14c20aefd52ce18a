"""Resolves decrypted user secrets for an agent's required integration fields"""
import logging
from datetime import datetime, UTC
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from coordinator.core.errors import AgentNotFound, MissingCredential
from coordinator.core.state_manager import StateManager
from shared.enums import CredentialStatus

logger = logging.getLogger(__name__)


def encrypt_secret(key: str, value: str) -> str:
    """Encrypt a secret value for storage with the given Fernet key"""
    return Fernet(key.encode()).encrypt(value.encode()).decode()


class CredentialResolver:
    """Fail-closed lookup of decrypted credentials.

    Values are decrypted per call and handed straight to the dispatcher;
    nothing decrypted is cached or written back to the store.
    """

    def __init__(self, state: StateManager, encryption_key: Optional[str]):
        self.state = state
        self._fernet = Fernet(encryption_key.encode()) if encryption_key else None

    async def resolve_credentials(self,
                                  agent_id: str,
                                  user_id: str,
                                  now: Optional[datetime] = None
                                  ) -> Dict[str, str]:
        """Return {field_name: secret} for every field the agent requires.

        Raises:
            AgentNotFound: If the agent does not exist
            MissingCredential: If any required field has no active,
                unexpired and decryptable value for the user
        """
        agent = await self.state.get_agent(agent_id)
        if agent is None:
            raise AgentNotFound(agent_id)

        now = now or datetime.now(UTC)
        resolved: Dict[str, str] = {}
        for field_name in agent.required_credentials:
            credential = await self.state.get_credential(user_id, field_name)
            if credential is None or credential.status != CredentialStatus.ACTIVE:
                raise MissingCredential(field_name)
            if credential.expires_at is not None and credential.expires_at <= now:
                raise MissingCredential(field_name)
            resolved[field_name] = self._decrypt(field_name,
                                                 credential.encrypted_value)
        return resolved

    def _decrypt(self, field_name: str, encrypted_value: str) -> str:
        if self._fernet is None:
            logger.error(
                f"Cannot decrypt credential {field_name}: no encryption key configured"
            )
            raise MissingCredential(field_name)
        try:
            return self._fernet.decrypt(encrypted_value.encode()).decode()
        except InvalidToken:
            logger.error(f"Credential {field_name} failed to decrypt")
            raise MissingCredential(field_name)

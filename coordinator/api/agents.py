"""Agent policies, analytics and collaborator records"""
from fastapi import APIRouter, HTTPException, Depends, Body
from pydantic import BaseModel
from typing import Optional
from datetime import datetime
import logging

from shared.models import Agent, Installation, UserCredential
from shared.enums import InstallationStatus
from shared.schemas import AgentAnalytics, PolicyDocument
from coordinator.core.credentials import encrypt_secret
from coordinator.core.dependencies import (get_history, get_rate_limiter,
                                           get_retry_engine, get_settings)
from coordinator.core.history import ExecutionHistoryRecorder
from coordinator.core.rate_limiter import RateLimiter
from coordinator.core.retry_policy import RetryPolicyEngine
from coordinator.core.settings import RuntimeSettings
from coordinator.core.state_manager import StateManager, state_manager
from coordinator.utils.policy_parser import parse_yaml_policy, PolicyDefinitionError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agents", tags=["agents"])


class InstallationUpdate(BaseModel):
    status: InstallationStatus = InstallationStatus.ACTIVE


class CredentialUpdate(BaseModel):
    value: str
    expires_at: Optional[datetime] = None


@router.put("/{agent_id}", response_model=Agent)
async def upsert_agent(agent_id: str,
                       agent: Agent,
                       state: StateManager = Depends(state_manager)):
    """Mirror agent metadata from the catalog"""
    if agent.id != agent_id:
        raise HTTPException(status_code=400, detail="Agent id mismatch")
    await state.save_agent(agent)
    return agent


@router.put("/{agent_id}/installations/{user_id}", response_model=Installation)
async def upsert_installation(agent_id: str,
                              user_id: str,
                              update: InstallationUpdate,
                              state: StateManager = Depends(state_manager)):
    installation = Installation(user_id=user_id,
                                agent_id=agent_id,
                                status=update.status)
    await state.save_installation(installation)
    return installation


@router.put("/{agent_id}/credentials/{user_id}/{field_name}", status_code=204)
async def store_credential(agent_id: str,
                           user_id: str,
                           field_name: str,
                           update: CredentialUpdate,
                           state: StateManager = Depends(state_manager),
                           settings: RuntimeSettings = Depends(get_settings)):
    """Encrypt and store a user secret; the plaintext is never returned"""
    if not settings.credential_encryption_key:
        raise HTTPException(status_code=400,
                            detail="Credential encryption key not configured")
    credential = UserCredential(
        user_id=user_id,
        field_name=field_name,
        encrypted_value=encrypt_secret(settings.credential_encryption_key,
                                       update.value),
        expires_at=update.expires_at)
    await state.save_credential(credential)
    logger.info(f"Stored credential {field_name} for user {user_id}")


@router.post("/{agent_id}/policies/from-yaml", response_model=PolicyDocument)
async def load_policies_from_yaml(
        agent_id: str,
        yaml_content: str = Body(..., media_type="text/plain"),
        retry_engine: RetryPolicyEngine = Depends(get_retry_engine),
        rate_limiter: RateLimiter = Depends(get_rate_limiter)):
    """Load retry policies and rate limits for an agent from YAML

    Example YAML:
    ```yaml
    policies:
      retry:
        - error_class: "server_error"
          max_retries: 5
          backoff: "linear"
          initial_delay: 2
      rate_limits:
        per_minute: 30
    ```
    """
    try:
        document = parse_yaml_policy(yaml_content, agent_id)
    except PolicyDefinitionError as e:
        raise HTTPException(status_code=400,
                            detail=f"Invalid policy definition: {e}")

    for policy in document.retry_policies:
        await retry_engine.set_policy(policy)
    if document.rate_limits:
        await rate_limiter.configure_limits(agent_id, document.rate_limits)

    logger.info(
        f"Loaded {len(document.retry_policies)} retry policies for agent {agent_id}"
    )
    return document


@router.get("/{agent_id}/analytics", response_model=AgentAnalytics)
async def get_analytics(
        agent_id: str,
        days: int = 30,
        history: ExecutionHistoryRecorder = Depends(get_history)):
    """Daily execution rollups for an agent"""
    if not 1 <= days <= 365:
        raise HTTPException(status_code=400,
                            detail="days must be between 1 and 365")
    return await history.get_daily_stats(agent_id, days)

"""Outbound webhook calls and outcome classification."""
import asyncio
import json
import logging
import time
import uuid
from datetime import datetime, UTC
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from shared.enums import ErrorClass
from shared.messages import JobAssignmentMessage
from shared.models import JobOutcome

logger = logging.getLogger(__name__)

USER_AGENT = "agent-runtime-dispatcher/0.1"


class DispatchResult(BaseModel):
    """Classified result of one webhook call"""
    success: bool
    status_code: Optional[int] = None
    body: Optional[Dict[str, Any]] = None
    error_class: Optional[ErrorClass] = None
    message: Optional[str] = None
    duration_ms: int = 0

    def to_outcome(self) -> JobOutcome:
        if self.success:
            return JobOutcome.success(self.body or {},
                                      status_code=self.status_code,
                                      duration_ms=self.duration_ms)
        if self.error_class == ErrorClass.TIMEOUT:
            return JobOutcome.timeout(self.message or "Webhook call timed out",
                                      duration_ms=self.duration_ms)
        return JobOutcome.failure(self.error_class,
                                  self.message or self.error_class.value,
                                  status_code=self.status_code,
                                  duration_ms=self.duration_ms)


def classify_status(status_code: int) -> Optional[ErrorClass]:
    """Map an HTTP status to an error class; None means success"""
    if 200 <= status_code < 300:
        return None
    if status_code == 429:
        return ErrorClass.RATE_LIMITED_BY_REMOTE
    if status_code >= 500:
        return ErrorClass.SERVER_ERROR
    return ErrorClass.CLIENT_ERROR


def build_payload(assignment: JobAssignmentMessage,
                  correlation_id: str,
                  now: Optional[datetime] = None) -> Dict[str, Any]:
    """Webhook request body; credentials exist only in this dict"""
    job = assignment.job
    return {
        "job_id": job.id,
        "execution_id": job.id,
        "correlation_id": correlation_id,
        "agent_id": job.agent_id,
        "agent_name": assignment.agent_name,
        "inputs": job.trigger_payload,
        "credentials": assignment.credentials,
        "timestamp": (now or datetime.now(UTC)).isoformat(),
    }


def _safe_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {"message": response.text}
    return data if isinstance(data, dict) else {"data": data}


class WebhookDispatcher:
    """Performs webhook calls with a hard timeout."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    async def dispatch(self,
                       webhook_url: str,
                       payload: Dict[str, Any],
                       timeout_seconds: float,
                       correlation_id: Optional[str] = None) -> DispatchResult:
        """POST payload to webhook_url and classify the result.

        Never raises for transport problems; every failure becomes a
        DispatchResult with an error class.
        """
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            content = json.dumps(payload)
        except (TypeError, ValueError) as e:
            return DispatchResult(success=False,
                                  error_class=ErrorClass.MALFORMED_PAYLOAD,
                                  message=f"Payload is not JSON serializable: {e}")

        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id

        try:
            async with httpx.AsyncClient(timeout=timeout_seconds,
                                         transport=self._transport) as client:
                # wait_for bounds the whole exchange, not each read
                response = await asyncio.wait_for(
                    client.post(webhook_url, content=content, headers=headers),
                    timeout=timeout_seconds)
        except (httpx.TimeoutException, asyncio.TimeoutError):
            return DispatchResult(
                success=False,
                error_class=ErrorClass.TIMEOUT,
                message=f"Webhook did not respond within {timeout_seconds}s",
                duration_ms=elapsed_ms())
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            return DispatchResult(success=False,
                                  error_class=ErrorClass.CLIENT_ERROR,
                                  message=f"Invalid webhook URL: {e}",
                                  duration_ms=elapsed_ms())
        except httpx.TransportError as e:
            return DispatchResult(success=False,
                                  error_class=ErrorClass.NETWORK_ERROR,
                                  message=f"Connection failed: {e}",
                                  duration_ms=elapsed_ms())

        body = _safe_json(response)
        error_class = classify_status(response.status_code)
        if error_class is None:
            return DispatchResult(success=True,
                                  status_code=response.status_code,
                                  body=body,
                                  duration_ms=elapsed_ms())

        return DispatchResult(
            success=False,
            status_code=response.status_code,
            body=body,
            error_class=error_class,
            message=f"HTTP {response.status_code}: {response.text[:200]}",
            duration_ms=elapsed_ms())

    async def dispatch_assignment(
            self, assignment: JobAssignmentMessage) -> JobOutcome:
        """Run one claimed job and return the outcome for Complete"""
        job = assignment.job
        correlation_id = str(uuid.uuid4())
        payload = build_payload(assignment, correlation_id)

        logger.info(
            f"Dispatching job {job.id} (attempt {job.attempt + 1}) to {assignment.webhook_url}"
        )
        result = await self.dispatch(assignment.webhook_url, payload,
                                     job.timeout_seconds, correlation_id)
        if result.success:
            logger.info(
                f"Job {job.id} webhook returned {result.status_code} in {result.duration_ms}ms"
            )
        else:
            logger.warning(
                f"Job {job.id} webhook failed ({result.error_class.value}): {result.message}"
            )
        return result.to_outcome()

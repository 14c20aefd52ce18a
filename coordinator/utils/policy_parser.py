"""Agent policy parser for YAML format"""
from typing import Dict, Any
import yaml

from shared.models import RetryPolicy
from shared.enums import ErrorClass, BackoffStrategy, LimitType
from shared.schemas import PolicyDocument


class PolicyDefinitionError(Exception):
    """Raised when a policy document is invalid"""
    pass


def parse_yaml_policy(yaml_content: str, agent_id: str) -> PolicyDocument:
    """Parse a YAML policy document for one agent.

    Expected YAML format:
    ```yaml
    policies:
      retry:
        - error_class: "server_error"
          max_retries: 5
          backoff: "exponential"
          initial_delay: 2
          max_delay: 120
          jitter: true
        - error_class: "timeout"
          max_retries: 1
          backoff: "fixed"
      rate_limits:
        per_minute: 30
        per_hour: 500
    ```

    Args:
        yaml_content: YAML string containing the policy document
        agent_id: Agent the policies apply to

    Returns:
        PolicyDocument: Parsed and validated policies

    Raises:
        PolicyDefinitionError: If YAML is invalid or fields are malformed
    """
    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise PolicyDefinitionError(f"Invalid YAML: {e}")

    if not isinstance(data, dict):
        raise PolicyDefinitionError("YAML must contain a dictionary")

    if "policies" not in data or not isinstance(data["policies"], dict):
        raise PolicyDefinitionError("YAML must contain a 'policies' mapping")

    policies = data["policies"]
    retry_defs = policies.get("retry", [])
    if not isinstance(retry_defs, list):
        raise PolicyDefinitionError("'retry' must be a list")

    retry_policies = []
    seen = set()
    for idx, retry_def in enumerate(retry_defs):
        policy = _parse_retry_policy(retry_def, idx, agent_id)
        if policy.error_class in seen:
            raise PolicyDefinitionError(
                f"Duplicate retry policy for error class: {policy.error_class.value}"
            )
        seen.add(policy.error_class)
        retry_policies.append(policy)

    rate_limits = _parse_rate_limits(policies.get("rate_limits", {}))

    if not retry_policies and not rate_limits:
        raise PolicyDefinitionError(
            "Policy document must define retry policies or rate limits")

    return PolicyDocument(agent_id=agent_id,
                          retry_policies=retry_policies,
                          rate_limits=rate_limits)


def _parse_retry_policy(retry_def: Dict[str, Any], index: int,
                        agent_id: str) -> RetryPolicy:
    """Parse a single retry policy entry.

    Raises:
        PolicyDefinitionError: If the entry is invalid
    """
    if not isinstance(retry_def, dict):
        raise PolicyDefinitionError(
            f"Retry policy at index {index} must be a dictionary")

    if "error_class" not in retry_def:
        raise PolicyDefinitionError(
            f"Retry policy at index {index} must have an 'error_class'")

    try:
        error_class = ErrorClass(retry_def["error_class"])
    except ValueError:
        valid = [e.value for e in ErrorClass]
        raise PolicyDefinitionError(
            f"Retry policy at index {index} has invalid error_class "
            f"'{retry_def['error_class']}'. Valid classes: {valid}")

    try:
        backoff = BackoffStrategy(retry_def.get("backoff", "exponential"))
    except ValueError:
        valid = [b.value for b in BackoffStrategy]
        raise PolicyDefinitionError(
            f"Retry policy '{error_class.value}' has invalid backoff "
            f"'{retry_def['backoff']}'. Valid strategies: {valid}")

    max_retries = retry_def.get("max_retries", 3)
    if not isinstance(max_retries, int) or max_retries < 0:
        raise PolicyDefinitionError(
            f"Retry policy '{error_class.value}' max_retries must be a non-negative integer"
        )

    initial_delay = retry_def.get("initial_delay", 5)
    max_delay = retry_def.get("max_delay", 300)
    for name, value in (("initial_delay", initial_delay), ("max_delay",
                                                           max_delay)):
        if isinstance(value, bool) or not isinstance(value,
                                                     (int, float)) or value < 0:
            raise PolicyDefinitionError(
                f"Retry policy '{error_class.value}' {name} must be a non-negative number"
            )
    if max_delay < initial_delay:
        raise PolicyDefinitionError(
            f"Retry policy '{error_class.value}' max_delay must be >= initial_delay"
        )

    jitter = retry_def.get("jitter", True)
    if not isinstance(jitter, bool):
        raise PolicyDefinitionError(
            f"Retry policy '{error_class.value}' jitter must be a boolean")

    return RetryPolicy(agent_id=agent_id,
                       error_class=error_class,
                       max_retries=max_retries,
                       backoff_strategy=backoff,
                       initial_delay=float(initial_delay),
                       max_delay=float(max_delay),
                       jitter_enabled=jitter)


def _parse_rate_limits(limit_defs: Any) -> Dict[LimitType, int]:
    if not isinstance(limit_defs, dict):
        raise PolicyDefinitionError("'rate_limits' must be a mapping")

    limits = {}
    for key, value in limit_defs.items():
        try:
            limit_type = LimitType(key)
        except ValueError:
            valid = [t.value for t in LimitType]
            raise PolicyDefinitionError(
                f"Invalid rate limit window '{key}'. Valid windows: {valid}")
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise PolicyDefinitionError(
                f"Rate limit '{key}' must be a non-negative integer")
        limits[limit_type] = value
    return limits

#!/usr/bin/env python3
"""Example script: register an agent, load its policies and trigger a run."""

import argparse
import sys
from pathlib import Path

import requests

from client.runtime_client import RuntimeClient


def main():
    """Register an agent for a user, then trigger and follow one execution."""
    parser = argparse.ArgumentParser(
        description="Trigger an agent execution and follow it to completion")
    parser.add_argument("webhook_url", help="Agent webhook endpoint")
    parser.add_argument("--agent-id", default="demo-agent")
    parser.add_argument("--user-id", default="demo-user")
    parser.add_argument("--api-key",
                        default="demo-key",
                        help="Value stored as the user's api_key credential")
    parser.add_argument(
        "--policy",
        default="default-agent.yaml",
        help="Policy filename under examples/policies (default: default-agent.yaml)")
    parser.add_argument("--coordinator", default="http://localhost:8000")
    args = parser.parse_args()

    client = RuntimeClient(base_url=args.coordinator)
    policy_path = Path(__file__).parent / "policies" / args.policy

    try:
        client.register_agent(args.agent_id,
                              "Demo Agent",
                              args.webhook_url,
                              required_credentials=["api_key"])
        client.install_agent(args.agent_id, args.user_id)
        client.store_credential(args.agent_id, args.user_id, "api_key",
                                args.api_key)

        document = client.load_policies_from_yaml(args.agent_id,
                                                  str(policy_path))
        print(f"✓ Loaded {len(document.retry_policies)} retry policies")

        job_id = client.enqueue(args.agent_id,
                                args.user_id,
                                payload={"message": "Hello from the demo"})
        print(f"\n✓ Job enqueued: {job_id}")
        print("\nWaiting for the execution to finish...")

        job = client.wait_for_job(job_id, timeout=120)
        print(f"\n✓ Job finished with status: {job.status.value}")
        if job.result is not None:
            print(f"  Result: {job.result}")
        if job.error_message:
            print(f"  Error ({job.error_class.value if job.error_class else 'unknown'}): {job.error_message}")

        print("\nHistory:")
        for entry in client.get_job_history(job_id):
            print(f"  - {entry.timestamp.isoformat()} {entry.phase.value}")

    except FileNotFoundError as e:
        print(f"✗ Error: {e}")
        return 1
    except requests.HTTPError as e:
        print(f"✗ Coordinator rejected the request: {e.response.text}")
        return 1
    except TimeoutError as e:
        print(f"✗ Error: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())

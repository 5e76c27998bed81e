"""Temporal client factory.

Creates connections to Temporal Cloud, or to a local dev server when no API
key is configured, using credentials from the environment.
"""

import os
from typing import Optional
import ssl
from pathlib import Path

# Load .env file if it exists
from dotenv import load_dotenv
env_path = Path(__file__).resolve().parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

from temporalio.client import Client


def get_task_queue() -> str:
    """Task queue the event workflows and activities run on."""
    return os.getenv("TEMPORAL_TASK_QUEUE", "event-pipeline")


async def get_temporal_client() -> Client:
    """Create and return a Temporal client.

    Reads configuration from environment variables:
    - TEMPORAL_ENDPOINT: Temporal endpoint (e.g., "temporal.example.com:7233")
    - TEMPORAL_NAMESPACE: Namespace (e.g., "default")
    - TEMPORAL_API_KEY: API key for Temporal Cloud; omit for a local server
    - TEMPORAL_CERT_PATH: Path to client certificate (optional, for mTLS)

    Returns:
        Connected Temporal client

    Raises:
        ValueError: If TEMPORAL_ENDPOINT is missing
    """
    endpoint = os.getenv("TEMPORAL_ENDPOINT")
    namespace = os.getenv("TEMPORAL_NAMESPACE", "default")
    api_key = os.getenv("TEMPORAL_API_KEY")
    cert_path = os.getenv("TEMPORAL_CERT_PATH")

    if not endpoint:
        raise ValueError(
            "TEMPORAL_ENDPOINT environment variable not set. "
            "Set to your Temporal endpoint (e.g., 'localhost:7233')"
        )

    if not api_key:
        # Local dev server: plaintext, no auth
        return await Client.connect(endpoint, namespace=namespace)

    tls_config: Optional[ssl.SSLContext] = ssl.create_default_context()
    if cert_path:
        tls_config.load_cert_chain(cert_path)

    return await Client.connect(
        target_host=endpoint,
        namespace=namespace,
        tls=tls_config,
        api_key=api_key,
    )

"""Azure provider configuration.

Immutable configuration dataclass for the Azure SDK adapter.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from stratus.core.exceptions import ConfigurationError


@dataclass(frozen=True, slots=True)
class Azure:
    """Azure Resource Manager adapter configuration.

    Credentials come from ``DefaultAzureCredential`` (environment, managed
    identity, Azure CLI login, ...). The subscription is read from
    AZURE_SUBSCRIPTION_ID when not given explicitly.

    Example:
        >>> from stratus.providers.azure import Azure
        >>> config = Azure(subscription_id="00000000-0000-0000-0000-000000000000")

    Args:
        subscription_id: Target subscription. Auto-detected from AZURE_SUBSCRIPTION_ID.
        poll_interval: Seconds between long-running operation polls. Default: 10.
        retry_attempts: Attempts for idempotent reads on transient errors. Default: 3.
        retry_max_wait: Upper bound in seconds for the backoff between reads. Default: 10.
        thread_pool_size: Worker threads for the sync SDK clients. Default: 8.
    """

    subscription_id: str | None = None
    poll_interval: float = 10.0
    retry_attempts: int = 3
    retry_max_wait: float = 10.0
    thread_pool_size: int = 8

    @property
    def type(self) -> str: return "azure"

    def resolved_subscription_id(self) -> str:
        subscription = self.subscription_id or os.environ.get("AZURE_SUBSCRIPTION_ID")
        if not subscription:
            raise ConfigurationError(
                "No Azure subscription configured. Set `subscription_id` under "
                "[providers.azure] or the AZURE_SUBSCRIPTION_ID environment variable."
            )
        return subscription

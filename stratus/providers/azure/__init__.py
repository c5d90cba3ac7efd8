"""Azure Resource Manager adapter for Stratus."""

from .clients import AzureModule, create_injector
from .compute import AzureComputeClient
from .config import Azure
from .network import AzureNetworkClient
from .sdk import AzureOperation

__all__ = [
    "Azure",
    "AzureComputeClient",
    "AzureModule",
    "AzureNetworkClient",
    "AzureOperation",
    "create_injector",
]

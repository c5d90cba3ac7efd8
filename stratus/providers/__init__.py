"""Cloud SDK adapters implementing the compute and network client protocols.

Adapters are imported lazily so that the core never pulls in an SDK::

    from stratus.providers.azure import AzureModule, Azure
"""

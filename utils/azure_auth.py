import logging
import os
from functools import lru_cache

from azure.identity import DefaultAzureCredential, ManagedIdentityCredential

logging.getLogger("azure.identity").setLevel(logging.WARNING)


def _using_managed_identity() -> bool:
    """True when a managed identity endpoint or client id is configured."""
    return bool(
        os.getenv("AZURE_CLIENT_ID") or os.getenv("MSI_ENDPOINT") or os.getenv("IDENTITY_ENDPOINT")
    )


def _is_local_dev() -> bool:
    env = os.getenv("ENVIRONMENT", "").lower()
    if env in ("prod", "production", "staging"):
        return False
    return not (os.getenv("CONTAINER_APP_NAME") or os.getenv("WEBSITE_SITE_NAME"))


@lru_cache(maxsize=1)
def get_credential():
    """
    Shared Azure credential for Entra ID auth (Redis AAD tokens, Azure Monitor).

    - Managed identity when the hosting environment provides one
    - Azure CLI login (``az login``) for local development
    - Environment + managed identity only otherwise
    """
    if _using_managed_identity():
        return ManagedIdentityCredential(client_id=os.getenv("AZURE_CLIENT_ID"))

    local = _is_local_dev()
    return DefaultAzureCredential(
        exclude_managed_identity_credential=local,
        exclude_workload_identity_credential=True,
        exclude_shared_token_cache_credential=True,
        exclude_visual_studio_code_credential=True,
        exclude_cli_credential=not local,
        exclude_powershell_credential=True,
        exclude_interactive_browser_credential=True,
    )

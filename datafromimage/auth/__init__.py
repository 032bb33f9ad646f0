"""Bearer token authentication against the hosted identity provider."""

from datafromimage.auth.dependencies import get_current_account
from datafromimage.auth.identity import Identity, IdentityClient, IdentityUnavailable

__all__ = ["get_current_account", "Identity", "IdentityClient", "IdentityUnavailable"]

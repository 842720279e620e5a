"""Remote functions client factory."""

from healthchat.services.functions.base import BaseFunctionsClient


def get_functions_client() -> BaseFunctionsClient:
    """Returns the HTTP client for the configured functions endpoint."""
    from healthchat.services.functions.client import FunctionsClient
    return FunctionsClient()

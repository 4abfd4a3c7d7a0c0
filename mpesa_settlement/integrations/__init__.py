"""External integrations for the M-Pesa gateway."""
from .credentials import (
    AccessToken,
    CredentialBroker,
    InMemoryTokenCache,
    RedisTokenCache,
    build_token_cache,
)
from .daraja_client import (
    AuthError,
    DarajaClient,
    DarajaError,
    DarajaErrorType,
    GatewayRejection,
    GatewayUnavailable,
)

__all__ = [
    "AccessToken",
    "AuthError",
    "CredentialBroker",
    "DarajaClient",
    "DarajaError",
    "DarajaErrorType",
    "GatewayRejection",
    "GatewayUnavailable",
    "InMemoryTokenCache",
    "RedisTokenCache",
    "build_token_cache",
]

from app.integrations.platform_adapters.base_adapter import (
    AdapterConfigurationError,
    AdapterResolutionError,
    BasePlatformAdapter,
    ContentTooLongError,
    PlatformAuthError,
    PlatformRateLimitedError,
    PlatformUnavailableError,
    PostMetrics,
    PublishError,
    PublishResult,
    RefreshedTokens,
    TokenExpiredError,
)
from app.integrations.platform_adapters.credentials import AccountCredentials, credentials_from_account
from app.integrations.platform_adapters.factory import (
    check_content_length,
    get_adapter_capabilities,
    get_platform_adapter,
    list_registered_platforms,
)

__all__ = [
    "AccountCredentials",
    "AdapterConfigurationError",
    "AdapterResolutionError",
    "BasePlatformAdapter",
    "ContentTooLongError",
    "PlatformAuthError",
    "PlatformRateLimitedError",
    "PlatformUnavailableError",
    "PostMetrics",
    "PublishError",
    "PublishResult",
    "RefreshedTokens",
    "TokenExpiredError",
    "check_content_length",
    "credentials_from_account",
    "get_adapter_capabilities",
    "get_platform_adapter",
    "list_registered_platforms",
]

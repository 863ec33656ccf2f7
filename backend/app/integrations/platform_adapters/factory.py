import importlib
import logging
import pkgutil
from types import ModuleType
from typing import Iterable

import httpx

from app.integrations.platform_adapters.base_adapter import (
    AdapterResolutionError,
    BasePlatformAdapter,
    PostMetrics,
    PublishResult,
    RefreshedTokens,
)
from app.integrations.platform_adapters.credentials import AccountCredentials

logger = logging.getLogger(__name__)

_DISCOVERED = False
_ADAPTER_REGISTRY: dict[str, type[BasePlatformAdapter]] = {}
_SKIP_MODULES = {"base_adapter", "credentials", "factory"}


class MissingPlatformAdapter(BasePlatformAdapter):
    platform = "missing"
    is_fallback = True

    def __init__(self, requested_platform: str, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(client)
        self.requested_platform = requested_platform

    @classmethod
    def get_capabilities(cls) -> dict:
        return {}

    def _unsupported(self) -> AdapterResolutionError:
        return AdapterResolutionError(f"No adapter registered for platform '{self.requested_platform}'")

    async def publish(
        self,
        credentials: AccountCredentials,
        content: str,
        media_urls: list[str] | None = None,
    ) -> PublishResult:
        raise self._unsupported()

    async def _publish(self, credentials: AccountCredentials, content: str, media_urls: list[str]) -> PublishResult:
        raise self._unsupported()

    async def _fetch_metrics(self, credentials: AccountCredentials, platform_post_id: str) -> PostMetrics:
        raise self._unsupported()

    async def refresh_credentials(self, credentials: AccountCredentials) -> RefreshedTokens:
        raise self._unsupported()


def _iter_subclasses(root: type[BasePlatformAdapter]) -> Iterable[type[BasePlatformAdapter]]:
    for subclass in root.__subclasses__():
        yield subclass
        yield from _iter_subclasses(subclass)


def _discover_adapter_modules() -> None:
    package = importlib.import_module("app.integrations.platform_adapters")
    if not isinstance(package, ModuleType) or not hasattr(package, "__path__"):
        return

    for module_info in pkgutil.iter_modules(package.__path__, prefix="app.integrations.platform_adapters."):
        module_name = module_info.name.rsplit(".", 1)[-1]
        if module_name in _SKIP_MODULES:
            continue
        try:
            importlib.import_module(module_info.name)
        except ImportError as exc:
            logger.warning(
                "platform_adapter_module_skip module=%s reason=%s",
                module_info.name,
                exc,
            )


def _load_registry() -> dict[str, type[BasePlatformAdapter]]:
    global _DISCOVERED
    if _DISCOVERED and _ADAPTER_REGISTRY:
        return _ADAPTER_REGISTRY

    _discover_adapter_modules()
    discovered: dict[str, type[BasePlatformAdapter]] = {}
    for adapter_cls in _iter_subclasses(BasePlatformAdapter):
        if getattr(adapter_cls, "is_fallback", False):
            continue
        platform = (getattr(adapter_cls, "platform", "") or "").strip().lower()
        if not platform:
            continue
        discovered[platform] = adapter_cls

    _ADAPTER_REGISTRY.clear()
    _ADAPTER_REGISTRY.update(discovered)
    _DISCOVERED = True
    logger.info(
        "platform_adapter_registry_loaded total=%s platforms=%s",
        len(_ADAPTER_REGISTRY),
        ",".join(sorted(_ADAPTER_REGISTRY.keys())),
    )
    return _ADAPTER_REGISTRY


def list_registered_platforms() -> list[str]:
    registry = _load_registry()
    return sorted(registry.keys())


def get_adapter_capabilities(platform: str) -> dict:
    normalized_platform = platform.strip().lower()
    adapter_cls = _load_registry().get(normalized_platform)
    if adapter_cls is None:
        raise AdapterResolutionError(f"Unsupported platform adapter: {normalized_platform}")
    return adapter_cls.get_capabilities()


def get_platform_adapter(
    platform: str,
    *,
    client: httpx.AsyncClient | None = None,
    strict: bool = True,
) -> BasePlatformAdapter:
    normalized_platform = platform.strip().lower()
    registry = _load_registry()
    adapter_cls = registry.get(normalized_platform)
    if adapter_cls is None:
        logger.error(
            "platform_adapter_resolution_failed platform=%s available_platforms=%s",
            normalized_platform,
            ",".join(sorted(registry.keys())),
        )
        if strict:
            raise AdapterResolutionError(f"Unsupported platform adapter: {normalized_platform}")
        return MissingPlatformAdapter(normalized_platform, client)

    logger.debug(
        "platform_adapter_resolved platform=%s adapter=%s",
        normalized_platform,
        adapter_cls.__name__,
    )
    return adapter_cls(client)


def check_content_length(platform: str, content: str) -> None:
    normalized_platform = platform.strip().lower()
    adapter_cls = _load_registry().get(normalized_platform)
    if adapter_cls is None:
        raise AdapterResolutionError(f"Unsupported platform adapter: {normalized_platform}")
    adapter_cls.check_content_length(content)

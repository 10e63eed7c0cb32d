from typing import Dict, Type

from .base import (
    ImageProvider,
    JobStatus,
    ProviderError,
    AUTH_FAILED,
    INSUFFICIENT_BALANCE,
    RATE_LIMITED,
    INVALID_INPUT,
    UNAVAILABLE,
    JOB_PENDING,
    JOB_SUCCEEDED,
    JOB_FAILED,
)
from .nano_banana import NanoBananaProvider
from .openai_image import OpenAIImageProvider

PROVIDER_CLASSES: Dict[str, Type[ImageProvider]] = {
    NanoBananaProvider.name: NanoBananaProvider,
    OpenAIImageProvider.name: OpenAIImageProvider,
}


class UnknownProvider(Exception):
    pass


class ProviderNotConfigured(Exception):
    pass


def normalize_provider_name(name: str, default: str = "nanobanana") -> str:
    return str(name or "").strip().lower() or default


def get_provider(name: str, app_settings) -> ImageProvider:
    key = normalize_provider_name(name, app_settings.generation.default_provider)
    provider_cls = PROVIDER_CLASSES.get(key)
    if provider_cls is None:
        raise UnknownProvider(f"Invalid provider. Use one of: {', '.join(sorted(PROVIDER_CLASSES))}")
    settings = app_settings.provider(key)
    provider = provider_cls(settings)
    if settings is None or not provider.configured:
        raise ProviderNotConfigured(f"{key} API key not configured")
    return provider


__all__ = [
    "ImageProvider",
    "JobStatus",
    "ProviderError",
    "AUTH_FAILED",
    "INSUFFICIENT_BALANCE",
    "RATE_LIMITED",
    "INVALID_INPUT",
    "UNAVAILABLE",
    "JOB_PENDING",
    "JOB_SUCCEEDED",
    "JOB_FAILED",
    "NanoBananaProvider",
    "OpenAIImageProvider",
    "UnknownProvider",
    "ProviderNotConfigured",
    "get_provider",
    "normalize_provider_name",
]

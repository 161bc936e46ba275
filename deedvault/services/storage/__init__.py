# Object store providers
from typing import Optional

from deedvault.core.config import Settings, get_settings
from deedvault.services.storage.base import ObjectStore, StoredObject, validate_key
from deedvault.services.storage.local import LocalObjectStore
from deedvault.services.storage.memory import InMemoryObjectStore
from deedvault.services.storage.r2 import R2ObjectStore


def get_provider(provider_name: str, **kwargs) -> ObjectStore:
    """
    Factory function to get an object store by name.

    Args:
        provider_name: One of 'local', 'memory', 'r2'
        **kwargs: Provider-specific configuration

    Returns:
        ObjectStore instance
    """
    providers = {
        "local": LocalObjectStore,
        "filesystem": LocalObjectStore,
        "memory": InMemoryObjectStore,
        "r2": R2ObjectStore,
        "cloudflare_r2": R2ObjectStore,
    }

    provider_class = providers.get(provider_name.lower())
    if not provider_class:
        raise ValueError(f"Unknown storage provider: {provider_name}")

    return provider_class(**kwargs)


def provider_from_settings(settings: Settings) -> ObjectStore:
    """Build the configured provider."""
    name = settings.storage_provider.lower()
    if name in ("local", "filesystem"):
        return get_provider(name, root=settings.storage_root)
    if name in ("r2", "cloudflare_r2"):
        return get_provider(
            name,
            account_id=settings.r2_account_id,
            access_key_id=settings.r2_access_key_id,
            secret_access_key=settings.r2_secret_access_key,
        )
    return get_provider(name)


_object_store: Optional[ObjectStore] = None


def get_object_store() -> ObjectStore:
    """Get or create the configured object store singleton."""
    global _object_store
    if _object_store is None:
        _object_store = provider_from_settings(get_settings())
    return _object_store


__all__ = [
    "ObjectStore",
    "StoredObject",
    "validate_key",
    "LocalObjectStore",
    "InMemoryObjectStore",
    "R2ObjectStore",
    "get_provider",
    "provider_from_settings",
    "get_object_store",
]

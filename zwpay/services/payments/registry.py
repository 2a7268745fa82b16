"""Startup-populated lookup tables for provider adapters and repositories."""

from types import MappingProxyType
from typing import Generic, Mapping, TypeVar

from zwpay.common.errors import NotConfiguredError
from zwpay.services.payments.repository import BaseRepository
from zwpay.services.provider_adapter.base import ProviderAdapter


TRANSACTION_REPO = "transactions"
PAYMENT_METHOD_REPO = "payment_methods"

T = TypeVar("T")


class Registry(Generic[T]):
    """Key -> instance table; writable until `freeze()`, read-only afterwards."""

    kind = "entry"

    def __init__(self) -> None:
        self._entries: dict[str, T] = {}
        self._frozen: Mapping[str, T] | None = None

    def register(self, key: str, instance: T) -> None:
        """Store one instance per key; a later registration replaces the earlier one."""

        if self._frozen is not None:
            raise RuntimeError(f"{self.kind} registry is frozen; cannot register {key}")
        self._entries[key] = instance

    def freeze(self) -> None:
        self._frozen = MappingProxyType(dict(self._entries))

    def get(self, key: str) -> T:
        entries = self._frozen if self._frozen is not None else self._entries
        try:
            return entries[key]
        except KeyError:
            raise NotConfiguredError(f"{self.kind} {key} not configured") from None

    def keys(self) -> list[str]:
        return sorted(self._entries)


class ProviderRegistry(Registry[ProviderAdapter]):
    kind = "provider"


class RepositoryRegistry(Registry[BaseRepository]):
    kind = "repository"

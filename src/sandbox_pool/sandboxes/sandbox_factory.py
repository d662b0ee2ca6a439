"""Registry resolving the configured provider name to a sandbox class."""

from typing import Dict, List, Optional, Type

from sandbox_pool.config import SandboxPoolConfig
from .base import BaseSandbox
from .e2b import E2BSandbox


class SandboxFactory:
    """Maps ``provider_type`` values to BaseSandbox subclasses.

    The pool only ever talks to the class returned here, through its
    ``create``/``connect`` classmethods.
    """

    _providers: Dict[str, Type[BaseSandbox]] = {"e2b": E2BSandbox}

    @classmethod
    def get_provider(cls, provider_type: Optional[str] = None) -> Type[BaseSandbox]:
        """Resolve a provider class, defaulting to ``PROVIDER_TYPE`` from settings.

        Raises:
            ValueError: the provider type is not registered
        """
        name = provider_type or SandboxPoolConfig().provider_type
        try:
            return cls._providers[name]
        except KeyError:
            raise ValueError(
                f"Unsupported provider type '{name}'. "
                f"Available providers: {', '.join(cls.get_available_providers())}"
            ) from None

    @classmethod
    def register_provider(
        cls, provider_type: str, provider_class: Type[BaseSandbox]
    ) -> None:
        if not (isinstance(provider_class, type) and issubclass(provider_class, BaseSandbox)):
            raise ValueError(
                f"Provider class {provider_class!r} must inherit from BaseSandbox"
            )
        cls._providers[provider_type] = provider_class

    @classmethod
    def get_available_providers(cls) -> List[str]:
        return sorted(cls._providers)

"""Generation provider contract.

A provider turns a model name and materialized parameters into a remote
operation id, and reports that operation's status on request. The pipeline
never looks past the :class:`models.queue.ProviderStatus` envelope.
"""

from typing import Any, Dict, Optional, Protocol

from models.queue import ProviderStatus


class ProviderError(Exception):
    """Transport or HTTP failure talking to a provider. Retryable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GenerationProvider(Protocol):
    """Protocol for generation providers (enables duck typing)."""

    name: str

    async def dispatch(self, model: str, params: Dict[str, Any]) -> str:
        """Start an operation; returns the provider-assigned operation id."""
        ...

    async def poll_status(self, operation_id: str) -> ProviderStatus:
        ...

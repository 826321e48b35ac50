"""Base agent abstraction for statement extraction agents.

This module defines the abstract base class for agents that turn page images of a bank statement into an
``ExtractionResult``. Agents report failures as data on the result, never by raising.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable

from app.core.models import ExtractionResult


class BaseAgent(ABC):
    """Abstract base class for all extraction agents."""

    @abstractmethod
    def extract_from_images(
        self,
        images: list[str],
        mime_type: str = "image/png",
        cancelled: Callable[[], bool] | None = None,
    ) -> ExtractionResult:
        """Extract accounts and transactions from base64-encoded page images.

        ``cancelled`` is polled between retries so an abandoned import stops calling the model.
        """

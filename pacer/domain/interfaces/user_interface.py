"""Interface for presenting results to the user.

Defines the contract for displaying payloads, statistics, errors, warnings
and informational messages, allowing different UI implementations.
"""

import abc
from typing import Any

from pacer.domain.models.common import Payload
from pacer.domain.models.stats import RateStats


class UserInterface(abc.ABC):
    """Abstract Base Class for user-facing output."""

    @abc.abstractmethod
    def display_payload(self, payload: Payload, **kwargs: Any) -> None:
        """Displays a decoded response body.

        Args:
            payload: The payload to render.
            **kwargs: Additional arguments such as `title` or `cached`.
        """
        pass

    @abc.abstractmethod
    def display_stats(self, stats: RateStats, **kwargs: Any) -> None:
        """Displays a throttling statistics snapshot."""
        pass

    @abc.abstractmethod
    def display_error(self, error_message: str, **kwargs: Any) -> None:
        pass

    @abc.abstractmethod
    def display_warning(self, warning_message: str, **kwargs: Any) -> None:
        pass

    @abc.abstractmethod
    def display_info(self, info_message: str, **kwargs: Any) -> None:
        pass

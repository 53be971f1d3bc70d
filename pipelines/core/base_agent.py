"""Abstract base class for all pipeline agents."""

from abc import ABC, abstractmethod
from typing import Any, Dict


class BaseAgent(ABC):
    """
    Abstract base class that all agents must inherit from.

    An agent takes the pipeline context dict and returns the keys it adds.
    Booking agents also expose typed methods (issue, validate, ...) that
    `run` delegates to, so they can be called directly by the HTTP layer.
    """

    def __init__(self, name: str) -> None:
        """
        Args:
            name: Identifier used in pipeline logs.
        """
        self.name = name

    @abstractmethod
    def run(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Execute the agent's main logic.

        Args:
            input_data: Accumulated pipeline context.

        Returns:
            Keys to merge into the context.
        """
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"

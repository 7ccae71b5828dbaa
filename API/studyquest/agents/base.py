from abc import ABC, abstractmethod
from typing import Any


class BaseAgent(ABC):
    """Dict-in/dict-out seam shared by the tool-facing agents."""

    name: str = "agent"

    @abstractmethod
    async def run(self, input_data: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

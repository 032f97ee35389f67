from abc import ABC, abstractmethod

from ...schemas.pipeline import SourceCandidate, SourceType


class SourceProvider(ABC):
    """
    One search backend.

    `search` never raises: per-item failures are skipped and a dead backend
    returns []. Every provider maps its own payload onto SourceCandidate.
    """

    name: str
    source_type: SourceType

    @abstractmethod
    async def search(self, query: str, **options) -> list[SourceCandidate]:
        ...

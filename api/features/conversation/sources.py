"""Source registry: citations of a conversation, deduplicated by source id.

The registry is derived state. It is rebuilt from messages on every read and
never written back.

Merge policy: two sources with the same id are the same entity, even when
their title, excerpt, page or confidence differ (for example after a document
was re-indexed). The first occurrence in message order provides the data;
later occurrences only add the id of the message citing them.
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, computed_field

from api.features.conversation.models import MessageModel, SourceModel

HIGH_CONFIDENCE_THRESHOLD = 0.8
MEDIUM_CONFIDENCE_THRESHOLD = 0.6


class ConfidenceBand(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def for_score(cls, confidence: float) -> "ConfidenceBand":
        if confidence >= HIGH_CONFIDENCE_THRESHOLD:
            return cls.HIGH
        if confidence >= MEDIUM_CONFIDENCE_THRESHOLD:
            return cls.MEDIUM
        return cls.LOW


class SourceEntry(BaseModel):
    """A distinct source and the messages citing it, in first-seen order."""

    source: SourceModel
    message_ids: List[str] = Field(default_factory=list)

    @computed_field
    @property
    def band(self) -> ConfidenceBand:
        return ConfidenceBand.for_score(self.source.confidence)

    @computed_field
    @property
    def citation_count(self) -> int:
        return len(self.message_ids)


class SourceSummary(BaseModel):
    """Aggregates over the distinct sources.

    ``average_confidence`` and ``max_page`` are None when there are no sources.
    """

    total_sources: int = 0
    high_confidence_count: int = 0
    average_confidence: Optional[float] = None
    max_page: Optional[int] = None


class SourceRegistry:
    """Immutable index of the sources cited across a list of messages."""

    def __init__(self, entries: Iterable[SourceEntry] = ()):
        self._entries: List[SourceEntry] = list(entries)
        self._by_id: Dict[str, SourceEntry] = {e.source.id: e for e in self._entries}

    @classmethod
    def from_messages(cls, messages: Iterable[MessageModel]) -> "SourceRegistry":
        ordered: Dict[str, SourceEntry] = {}
        for message in messages:
            for source in message.sources:
                entry = ordered.get(source.id)
                if entry is None:
                    ordered[source.id] = SourceEntry(source=source, message_ids=[message.id])
                elif message.id not in entry.message_ids:
                    entry.message_ids.append(message.id)
        return cls(ordered.values())

    @property
    def entries(self) -> List[SourceEntry]:
        return [e.model_copy(deep=True) for e in self._entries]

    def get(self, source_id: str) -> Optional[SourceEntry]:
        entry = self._by_id.get(str(source_id))
        return entry.model_copy(deep=True) if entry else None

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self.entries)

    def summary(self) -> SourceSummary:
        if not self._entries:
            return SourceSummary()
        confidences = [e.source.confidence for e in self._entries]
        return SourceSummary(
            total_sources=len(self._entries),
            high_confidence_count=sum(
                1 for e in self._entries if e.band == ConfidenceBand.HIGH
            ),
            average_confidence=sum(confidences) / len(confidences),
            max_page=max(e.source.page for e in self._entries),
        )

"""Shared ingestion data types."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class CandidateItem:
    """Normalized item handed to the relay by a source adapter.

    ``identity`` is the stable natural key (feed GUID, URL or numeric id) and
    must be non-empty for the item to be tracked. Everything else is cargo for
    formatting; only ``published_at`` (ordering) and ``score`` (ranked
    sources) influence selection.
    """

    identity: str
    title: str = ""
    link: Optional[str] = None
    description: Optional[str] = None
    thumbnail: Optional[str] = None
    published_at: Optional[datetime] = None
    score: Optional[float] = None
    extra: Optional[Dict[str, Any]] = None

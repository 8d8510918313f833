"""Dataclasses representing stored checkpoint records."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(slots=True)
class CheckpointRecord:
    key: str
    payload: dict
    updated_at: datetime

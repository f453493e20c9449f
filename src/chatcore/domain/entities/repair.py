"""Aggregate repair tasks."""

from datetime import datetime, timezone
from enum import Enum

import ulid
from pydantic import BaseModel, Field


class RepairKind(str, Enum):
    """Which aggregate a repair task recomputes."""

    THREAD = "thread"
    REACTIONS = "reactions"


class RepairTask(BaseModel):
    """Request to recompute one aggregate from its underlying rows."""

    id: str = Field(default_factory=lambda: str(ulid.new()))
    kind: RepairKind
    target_id: str
    emoji_code: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def get_identity_key(self) -> str:
        """Return the identity key for deduplication.

        Two pending repairs of the same aggregate collapse into one, since a
        recomputation covers every earlier failed update.
        """
        if self.emoji_code is None:
            return f"{self.kind.value}:{self.target_id}"
        return f"{self.kind.value}:{self.target_id}:{self.emoji_code}"

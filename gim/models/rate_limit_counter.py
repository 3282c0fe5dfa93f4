"""
Rate limit counter model.

Backs DatabaseCounterStore: one row per (tier, identifier, window) key, so
several API processes share the same counts. Rows past expires_at are
treated as absent and purged periodically.
"""

from datetime import datetime

from sqlmodel import Field, SQLModel

from gim.core.typing import utc_now


class RateLimitCounter(SQLModel, table=True):
    key: str = Field(primary_key=True, max_length=255)  # ratelimit:{tier}:{identifier}:{window}
    count: int = Field(default=0)
    expires_at: datetime = Field(index=True)
    created_at: datetime = Field(default_factory=utc_now)


__all__ = ["RateLimitCounter"]

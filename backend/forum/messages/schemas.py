"""Pydantic schemas for persisted chat messages.

These schemas are used by:
    - MessageStoreService: DuckDB storage layer
    - GET /chathistory: Paginated conversation history
"""
from datetime import datetime

from pydantic import BaseModel, Field


class StoredMessage(BaseModel):
    """A single persisted chat message.

    Attributes:
        id: Row identifier assigned by the database.
        from_user: Sender identity.
        to_user: Recipient identity, or "all" for broadcasts.
        body: Message text.
        created_at: Server-assigned timestamp (UTC).
    """
    id: int = Field(..., description="Row identifier")
    from_user: str = Field(..., description="Sender identity")
    to_user: str = Field(..., description="Recipient identity or 'all'")
    body: str = Field(..., description="Message text")
    created_at: datetime = Field(..., description="When the message was routed (UTC)")

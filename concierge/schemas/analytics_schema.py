"""Analytics event model handed to the external sink."""

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, Field

PropertyValue = Union[str, int, float, bool, None]


class AnalyticsEvent(BaseModel):
    """
    One correlated analytics record.

    Properties are bounded and PII-free: emails, phones, and free-text
    comments never appear; order numbers are salted-hashed upstream.
    """

    name: str
    session_id: str
    request_id: str
    intent: Optional[str] = None
    timestamp: datetime
    properties: dict[str, PropertyValue] = Field(default_factory=dict)

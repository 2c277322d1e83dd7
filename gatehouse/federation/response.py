"""
Response models for federated login endpoints.
"""

from pydantic import BaseModel


class ProviderSummary(BaseModel):
    """Public view of an enabled provider, for the login page."""

    slug: str
    name: str
    auto_launch: bool = False

    class Config:
        from_attributes = True

from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class EffectiveIdentity(BaseModel):
    """
    The identity used to talk to the Marketplace API for one request.

    When the requesting user is a delegated team member, effective_email and
    dealer_id belong to the store owner, never to the team member.
    """
    requesting_user_id: str
    effective_email: str
    is_delegated: bool = False
    delegating_owner_id: Optional[str] = None
    dealer_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class AdvertiserResolution(BaseModel):
    advertiser_id: str
    source: str
    all_available_ids: list = []


class MarketplaceCredentials(BaseModel):
    """API key pair plus the store details returned alongside a token"""
    api_key: str = Field(repr=False)
    api_secret: str = Field(repr=False)
    source: str  # "dealer" or "centralized"
    store_info: Dict[str, Any] = {}

    model_config = ConfigDict(frozen=True)

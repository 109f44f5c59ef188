from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
from pydantic import ConfigDict, Field, model_validator

from app.core.enums import AdvertStatus
from .base import BaseSchema, ChangesetSchema

Amount = Union[int, float]


class StockRecordRead(BaseSchema):
    """Cached stock record, annotated with its age"""
    dealer_id: str
    stock_id: str
    advertiser_id: Optional[str] = None

    vehicle_data: Optional[Dict[str, Any]] = None
    adverts_data: Optional[Dict[str, Any]] = None
    metadata_raw: Optional[Dict[str, Any]] = None
    advertiser_data: Optional[Dict[str, Any]] = None
    features_data: Optional[List[Dict[str, Any]]] = None

    registration: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    lifecycle_state: Optional[str] = None
    forecourt_price_gbp: Optional[Decimal] = None
    total_price_gbp: Optional[Decimal] = None

    last_fetched_at: Optional[datetime] = None
    missing_upstream: bool = False

    cache_age_hours: Optional[float] = None
    is_stale: bool = False


# Change-set records. Field aliases are the Marketplace field names.

class PriceChange(ChangesetSchema):
    amount_gbp: Optional[Amount] = Field(default=None, alias="amountGBP")


class ChannelStatusChange(ChangesetSchema):
    status: Optional[AdvertStatus] = None


class DisplayOptionsChange(ChangesetSchema):
    exclude_previous_owners: Optional[bool] = Field(default=None, alias="excludePreviousOwners")
    exclude_strapline: Optional[bool] = Field(default=None, alias="excludeStrapline")
    exclude_mot: Optional[bool] = Field(default=None, alias="excludeMot")
    exclude_warranty: Optional[bool] = Field(default=None, alias="excludeWarranty")
    exclude_interior_details: Optional[bool] = Field(default=None, alias="excludeInteriorDetails")
    exclude_tyre_condition: Optional[bool] = Field(default=None, alias="excludeTyreCondition")
    exclude_body_condition: Optional[bool] = Field(default=None, alias="excludeBodyCondition")


class RetailAdvertsChange(ChangesetSchema):
    supplied_price: Optional[PriceChange] = Field(default=None, alias="suppliedPrice")
    attention_grabber: Optional[str] = Field(default=None, alias="attentionGrabber")
    description: Optional[str] = None
    description2: Optional[str] = None
    vat_status: Optional[str] = Field(default=None, alias="vatStatus")
    display_options: Optional[DisplayOptionsChange] = Field(default=None, alias="displayOptions")

    autotrader_advert: Optional[ChannelStatusChange] = Field(default=None, alias="autotraderAdvert")
    advertiser_advert: Optional[ChannelStatusChange] = Field(default=None, alias="advertiserAdvert")
    locator_advert: Optional[ChannelStatusChange] = Field(default=None, alias="locatorAdvert")
    export_advert: Optional[ChannelStatusChange] = Field(default=None, alias="exportAdvert")
    profile_advert: Optional[ChannelStatusChange] = Field(default=None, alias="profileAdvert")


class TradeAdvertsChange(ChangesetSchema):
    dealer_auction_advert: Optional[ChannelStatusChange] = Field(default=None, alias="dealerAuctionAdvert")


class AdvertsChange(ChangesetSchema):
    forecourt_price: Optional[PriceChange] = Field(default=None, alias="forecourtPrice")
    forecourt_price_vat_status: Optional[str] = Field(default=None, alias="forecourtPriceVatStatus")
    # Accepted at the top level for convenience; always written under retailAdverts
    supplied_price: Optional[PriceChange] = Field(default=None, alias="suppliedPrice")
    attention_grabber: Optional[str] = Field(default=None, alias="attentionGrabber")
    reservation_status: Optional[str] = Field(default=None, alias="reservationStatus")
    retail_adverts: Optional[RetailAdvertsChange] = Field(default=None, alias="retailAdverts")
    trade_adverts: Optional[TradeAdvertsChange] = Field(default=None, alias="tradeAdverts")


class MetadataChange(ChangesetSchema):
    lifecycle_state: Optional[str] = Field(default=None, alias="lifecycleState")


class LocationChange(ChangesetSchema):
    address_line_one: Optional[str] = Field(default=None, alias="addressLineOne")
    town: Optional[str] = None
    county: Optional[str] = None
    region: Optional[str] = None
    post_code: Optional[str] = Field(default=None, alias="postCode")
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class AdvertiserChange(ChangesetSchema):
    """Advertiser details shown on the advert"""
    name: Optional[str] = None
    segment: Optional[str] = None
    website: Optional[str] = None
    phone: Optional[str] = None
    advert_strapline: Optional[str] = Field(default=None, alias="advertStrapline")
    location: Optional[LocationChange] = None


class VehicleChange(ChangesetSchema):
    registration: Optional[str] = None
    colour: Optional[str] = None
    odometer_reading_miles: Optional[int] = Field(default=None, alias="odometerReadingMiles", ge=0)
    plate: Optional[str] = None
    # Only the year is editable; month and day are kept from firstRegistrationDate
    year_of_registration: Optional[str] = Field(default=None, alias="yearOfRegistration", pattern=r"^\d{4}$")


class FeatureChange(ChangesetSchema):
    name: str = Field(min_length=1)
    type: Optional[str] = None
    standard_name: Optional[str] = Field(default=None, alias="standardName")
    category: Optional[str] = None
    rarity_rating: Optional[float] = Field(default=None, alias="rarityRating")
    value_rating: Optional[float] = Field(default=None, alias="valueRating")


class StockUpdateRequest(ChangesetSchema):
    """A caller's requested change-set for one stock record"""
    adverts: Optional[AdvertsChange] = None
    metadata: Optional[MetadataChange] = None
    advertiser: Optional[AdvertiserChange] = None
    vehicle: Optional[VehicleChange] = None
    features: Optional[List[FeatureChange]] = None
    advertiser_id: Optional[str] = Field(default=None, alias="advertiserId")

    # Unknown sections are rejected rather than dropped, so an edit never silently becomes a no-op
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    @model_validator(mode="after")
    def require_a_section(self):
        sections = (self.adverts, self.metadata, self.advertiser, self.vehicle, self.features)
        if all(section is None for section in sections):
            raise ValueError("One of adverts, metadata, advertiser, vehicle or features must be provided")
        return self

    def to_changeset(self) -> Dict[str, Any]:
        """Marketplace-shaped dict holding only the fields the caller supplied"""
        return self.model_dump(
            by_alias=True,
            exclude_none=True,
            exclude={"advertiser_id"},
            mode="json",
        )


class ListingRowUpdate(BaseSchema):
    """A single-row edit from the listings grid"""
    stock_id: str = Field(alias="stockId")
    price: Optional[Amount] = None
    autotrader: Optional[bool] = None
    advertiser: Optional[bool] = None
    locator: Optional[bool] = None
    profile: Optional[bool] = None


class TempDataCreate(BaseSchema):
    data: Dict[str, Any]

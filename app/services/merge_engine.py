# app/services/merge_engine.py
"""
Merge engine for cached Marketplace stock records.

Three steps, applied in order for every write:

1. diff_changeset: compare a caller's change-set with the cached record and
   keep only the fields that actually change (the Marketplace treats every
   field it receives as a write).
2. apply_response: fold the Marketplace's response back into the cached
   sub-documents. A sub-document present in the response replaces the cached
   one outright; one that was written but not echoed back is deep-merged.
3. derive_flattened_fields: recompute the scalar columns (prices, lifecycle
   state) from the resulting sub-documents.

Merging is explicit per sub-document type. Arrays are always replaced, never
concatenated.
"""

import logging
from copy import deepcopy
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from app.core.enums import RetailChannel, VatScheme
from app.core.exceptions import ValidationError
from app.core.utils import TWO_PLACES, to_money

logger = logging.getLogger(__name__)

# UK standard rate; fixed, not read from any stored tax rate
VAT_UPLIFT = Decimal("1.20")

VAT_SCHEME_MAP = {
    "no vat": VatScheme.NO_VAT,
    "inc vat": VatScheme.INCLUDES,
    "ex vat": VatScheme.EXCLUDES,
    # Already-normalised values map to themselves
    "no_vat": VatScheme.NO_VAT,
    "includes": VatScheme.INCLUDES,
    "excludes": VatScheme.EXCLUDES,
}

DISPLAY_OPTION_KEYS = [
    "excludePreviousOwners",
    "excludeStrapline",
    "excludeMot",
    "excludeWarranty",
    "excludeInteriorDetails",
    "excludeTyreCondition",
    "excludeBodyCondition",
]

RETAIL_TEXT_FIELDS = ["description", "description2"]

DEFAULT_SUPPLIED_PRICE_MINIMUM = 75

# Sub-document name -> StockCache column
SUBDOCUMENT_COLUMNS = {
    "vehicle": "vehicle_data",
    "adverts": "adverts_data",
    "metadata": "metadata_raw",
    "advertiser": "advertiser_data",
    "features": "features_data",
}

# Sections that are lists rather than objects
LIST_SUBDOCUMENTS = {"features"}

ADVERTISER_TEXT_FIELDS = ["name", "segment", "website", "phone", "advertStrapline"]
LOCATION_TEXT_FIELDS = ["addressLineOne", "town", "county", "region", "postCode"]
LOCATION_COORDINATE_FIELDS = ["latitude", "longitude"]

VEHICLE_TEXT_FIELDS = ["registration", "colour", "plate"]


@dataclass
class DiffResult:
    payload: Dict[str, Any] = field(default_factory=dict)
    changed_fields: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.payload

    @property
    def vat_status_changed(self) -> bool:
        return any(f in ("adverts.forecourtPriceVatStatus", "adverts.retailAdverts.vatStatus") for f in self.changed_fields)


@dataclass
class ReconcileResult:
    payload: Dict[str, Any]
    record_fields: Dict[str, Any]
    sources: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


# Generic helpers

def _get(doc: Optional[Dict[str, Any]], *path: str) -> Any:
    current: Any = doc
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _amount(value: Any) -> Optional[Decimal]:
    amount = to_money(value)
    if amount is not None and amount < 0:
        raise ValidationError("Prices cannot be negative", details=f"amountGBP={value}")
    return amount


def _wire_amount(value: Any) -> Any:
    """Send whole-pound amounts as integers"""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def deep_merge(base: Optional[Dict[str, Any]], update: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge update into a copy of base.

    Nested dicts are merged key by key. Scalars and lists in update replace
    whatever base holds.
    """
    result = deepcopy(base) if isinstance(base, dict) else {}
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = deepcopy(value)
    return result


def merge_adverts(base: Optional[Dict[str, Any]], update: Dict[str, Any]) -> Dict[str, Any]:
    # Channel objects, retailAdverts and displayOptions are nested records
    return deep_merge(base, update)


def merge_metadata(base: Optional[Dict[str, Any]], update: Dict[str, Any]) -> Dict[str, Any]:
    # Metadata is flat; a key-level overwrite is the whole merge
    result = deepcopy(base) if isinstance(base, dict) else {}
    result.update(deepcopy(update))
    return result


def merge_vehicle(base: Optional[Dict[str, Any]], update: Dict[str, Any]) -> Dict[str, Any]:
    return deep_merge(base, update)


def merge_advertiser(base: Optional[Dict[str, Any]], update: Dict[str, Any]) -> Dict[str, Any]:
    # location arrives as the full merged object, so a recursive merge is a no-op there
    return deep_merge(base, update)


def merge_features(base: Optional[List[Dict[str, Any]]], update: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # The feature list is replaced as a whole
    return deepcopy(update)


SUBDOCUMENT_MERGERS: Dict[str, Callable[[Any, Any], Any]] = {
    "vehicle": merge_vehicle,
    "adverts": merge_adverts,
    "metadata": merge_metadata,
    "advertiser": merge_advertiser,
    "features": merge_features,
}


def _is_subdocument(name: str, value: Any) -> bool:
    return isinstance(value, list if name in LIST_SUBDOCUMENTS else dict)


def subdocuments(record: Any) -> Dict[str, Any]:
    """Sub-documents of a StockCache row (or of a dict shaped like one)"""
    if record is None:
        return {name: None for name in SUBDOCUMENT_COLUMNS}
    if isinstance(record, dict):
        return {name: record.get(column, record.get(name)) for name, column in SUBDOCUMENT_COLUMNS.items()}
    return {name: getattr(record, column, None) for name, column in SUBDOCUMENT_COLUMNS.items()}


# VAT

def normalize_vat_scheme(status: Optional[str]) -> VatScheme:
    """Map a human readable VAT status ('Ex VAT', 'inc vat', ...) to a VatScheme"""
    return VAT_SCHEME_MAP.get(_text(status).lower(), VatScheme.NO_VAT)


def effective_vat_status(adverts: Optional[Dict[str, Any]]) -> Optional[str]:
    """Top-level forecourtPriceVatStatus first, then retailAdverts.vatStatus"""
    return _get(adverts, "forecourtPriceVatStatus") or _get(adverts, "retailAdverts", "vatStatus")


def excludes_vat(adverts: Optional[Dict[str, Any]]) -> bool:
    status = effective_vat_status(adverts)
    return status is not None and normalize_vat_scheme(status) == VatScheme.EXCLUDES


# Outbound diff

def _diff_adverts(
    original: Dict[str, Any],
    changes: Dict[str, Any],
    vehicle_type: Optional[str],
    supplied_price_minimum: int,
    result: DiffResult,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    retail_payload: Dict[str, Any] = {}
    original_retail = original.get("retailAdverts") or {}
    retail_changes = changes.get("retailAdverts") or {}

    # Forecourt price
    if "forecourtPrice" in changes:
        new_amount = _amount(_get(changes, "forecourtPrice", "amountGBP"))
        current_amount = _amount(_get(original, "forecourtPrice", "amountGBP")) or Decimal("0.00")
        if new_amount is not None and new_amount != current_amount:
            merged = dict(original.get("forecourtPrice") or {})
            merged["amountGBP"] = _wire_amount(changes["forecourtPrice"]["amountGBP"])
            payload["forecourtPrice"] = merged
            result.changed_fields.append("adverts.forecourtPrice")

    # Top-level scalars
    for key in ("forecourtPriceVatStatus", "reservationStatus"):
        if key in changes and changes[key] != original.get(key):
            payload[key] = changes[key]
            result.changed_fields.append(f"adverts.{key}")

    # Supplied price: accepted at either level, always written under retailAdverts
    supplied = changes.get("suppliedPrice") or retail_changes.get("suppliedPrice")
    if supplied is not None and supplied.get("amountGBP") is not None:
        new_amount = _amount(supplied["amountGBP"])
        current_amount = _amount(_get(original_retail, "suppliedPrice", "amountGBP"))
        if new_amount != current_amount:
            if _text(vehicle_type).lower() != "car":
                result.warnings.append(
                    f"Supplied price skipped: only supported for cars (vehicle type: {vehicle_type or 'unknown'})"
                )
            elif new_amount < supplied_price_minimum:
                result.warnings.append(
                    f"Supplied price skipped: £{new_amount} is below the £{supplied_price_minimum} minimum"
                )
            else:
                merged = dict(original_retail.get("suppliedPrice") or {})
                merged["amountGBP"] = _wire_amount(supplied["amountGBP"])
                retail_payload["suppliedPrice"] = merged
                result.changed_fields.append("adverts.retailAdverts.suppliedPrice")

    # Attention grabber lives at both levels
    grabber = changes.get("attentionGrabber")
    if grabber is None:
        grabber = retail_changes.get("attentionGrabber")
    if grabber is not None:
        new_grabber = _text(grabber)
        current_grabber = _text(original.get("attentionGrabber") or original_retail.get("attentionGrabber"))
        if new_grabber != current_grabber:
            payload["attentionGrabber"] = new_grabber
            retail_payload["attentionGrabber"] = new_grabber
            result.changed_fields.append("adverts.attentionGrabber")

    # Retail text fields
    for key in RETAIL_TEXT_FIELDS:
        if key in retail_changes:
            new_text = _text(retail_changes[key])
            if new_text != _text(original_retail.get(key)):
                retail_payload[key] = new_text
                result.changed_fields.append(f"adverts.retailAdverts.{key}")

    if "vatStatus" in retail_changes and retail_changes["vatStatus"] != original_retail.get("vatStatus"):
        retail_payload["vatStatus"] = retail_changes["vatStatus"]
        result.changed_fields.append("adverts.retailAdverts.vatStatus")

    # Display options: diffed key by key, sent as the full merged object
    display_changes = retail_changes.get("displayOptions") or {}
    original_display = original_retail.get("displayOptions") or {}
    changed_display = {
        key: display_changes[key]
        for key in DISPLAY_OPTION_KEYS
        if key in display_changes and display_changes[key] is not None
        and bool(display_changes[key]) != bool(original_display.get(key, False))
    }
    if changed_display:
        merged = dict(original_display)
        merged.update(changed_display)
        retail_payload["displayOptions"] = merged
        result.changed_fields.append("adverts.retailAdverts.displayOptions")

    # Channel publish status
    for channel in RetailChannel:
        new_status = _get(retail_changes, channel.value, "status")
        if new_status is not None and new_status != _get(original_retail, channel.value, "status"):
            merged = dict(original_retail.get(channel.value) or {})
            merged["status"] = new_status
            retail_payload[channel.value] = merged
            result.changed_fields.append(f"adverts.retailAdverts.{channel.value}")

    if retail_payload:
        payload["retailAdverts"] = retail_payload

    # Trade adverts
    auction_status = _get(changes, "tradeAdverts", "dealerAuctionAdvert", "status")
    original_auction = _get(original, "tradeAdverts", "dealerAuctionAdvert") or {}
    if auction_status is not None and auction_status != original_auction.get("status"):
        merged = dict(original_auction)
        merged["status"] = auction_status
        payload["tradeAdverts"] = {"dealerAuctionAdvert": merged}
        result.changed_fields.append("adverts.tradeAdverts.dealerAuctionAdvert")

    return payload


def _diff_metadata(original: Dict[str, Any], changes: Dict[str, Any], result: DiffResult) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    lifecycle = changes.get("lifecycleState")
    if lifecycle is not None and lifecycle != original.get("lifecycleState"):
        payload["lifecycleState"] = lifecycle
        result.changed_fields.append("metadata.lifecycleState")
    return payload


def _is_valid_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _coordinate(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        raise ValidationError("Latitude and longitude must be numbers", details=f"value={value}")


def _diff_advertiser(original: Dict[str, Any], changes: Dict[str, Any], result: DiffResult) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}

    for key in ADVERTISER_TEXT_FIELDS:
        if key not in changes:
            continue
        new_text = _text(changes[key])
        if key == "website" and new_text and not _is_valid_url(new_text):
            raise ValidationError("Invalid website URL format", details=new_text)
        if new_text != _text(original.get(key)):
            payload[key] = new_text
            result.changed_fields.append(f"advertiser.{key}")

    # Location: diffed key by key, sent as the full merged object
    location_changes = changes.get("location")
    if isinstance(location_changes, dict):
        original_location = original.get("location") or {}
        changed_location: Dict[str, Any] = {}
        for key in LOCATION_TEXT_FIELDS:
            if key in location_changes:
                new_text = _text(location_changes[key])
                if new_text != _text(original_location.get(key)):
                    changed_location[key] = new_text
        for key in LOCATION_COORDINATE_FIELDS:
            if location_changes.get(key) is not None:
                new_value = _coordinate(location_changes[key])
                if new_value != _coordinate(original_location.get(key)):
                    changed_location[key] = new_value
        if changed_location:
            merged = dict(original_location)
            merged.update(changed_location)
            payload["location"] = merged
            result.changed_fields.append("advertiser.location")

    return payload


def _diff_vehicle(original: Dict[str, Any], changes: Dict[str, Any], result: DiffResult) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}

    for key in VEHICLE_TEXT_FIELDS:
        new_text = _text(changes.get(key))
        if new_text and new_text != original.get(key):
            payload[key] = new_text
            result.changed_fields.append(f"vehicle.{key}")

    mileage = changes.get("odometerReadingMiles")
    if mileage not in (None, ""):
        try:
            new_mileage = int(mileage)
        except (TypeError, ValueError):
            raise ValidationError("Mileage must be a whole number", details=f"odometerReadingMiles={mileage}")
        if new_mileage != original.get("odometerReadingMiles"):
            payload["odometerReadingMiles"] = new_mileage
            result.changed_fields.append("vehicle.odometerReadingMiles")

    # The year replaces the first four characters of firstRegistrationDate
    year = _text(changes.get("yearOfRegistration"))
    if year:
        original_date = original.get("firstRegistrationDate") or ""
        new_date = f"{year}{(original_date or '2000-01-01')[4:]}"
        if new_date != original_date:
            payload["firstRegistrationDate"] = new_date
            result.changed_fields.append("vehicle.firstRegistrationDate")

    return payload


def _feature_names(features: Optional[List[Dict[str, Any]]]) -> List[str]:
    return sorted(_text(feature.get("name")) for feature in features or [] if isinstance(feature, dict))


def _diff_features(
    original: Optional[List[Dict[str, Any]]],
    changes: List[Dict[str, Any]],
    result: DiffResult,
) -> Optional[List[Dict[str, Any]]]:
    """Features change when the sorted name lists differ; the new list is sent whole"""
    if _feature_names(changes) == _feature_names(original):
        return None
    result.changed_fields.append("features")
    return deepcopy(changes)


def diff_changeset(
    original: Dict[str, Any],
    changeset: Dict[str, Any],
    vehicle_type: Optional[str] = None,
    supplied_price_minimum: int = DEFAULT_SUPPLIED_PRICE_MINIMUM,
) -> DiffResult:
    """
    Build the outbound payload: only fields whose value differs from the cache.

    Args:
        original: Cached sub-documents, as returned by subdocuments()
        changeset: Marketplace-shaped change-set with any of the adverts,
            metadata, advertiser, vehicle and features sections
        vehicle_type: Vehicle type of the record; supplied prices are car-only
        supplied_price_minimum: Lowest supplied price the Marketplace accepts

    Returns:
        DiffResult with the payload, the changed field paths and any warnings
        for changes that were dropped

    Raises:
        ValidationError: If a section has the wrong shape, a price is negative
            or the advertiser website is not a URL
    """
    if not isinstance(changeset, dict):
        raise ValidationError("Change-set must be an object")
    for name in SUBDOCUMENT_COLUMNS:
        if name in changeset and not _is_subdocument(name, changeset[name]):
            raise ValidationError(f"{name} must be {'a list' if name in LIST_SUBDOCUMENTS else 'an object'}")

    result = DiffResult()
    if changeset.get("adverts"):
        adverts_payload = _diff_adverts(
            original.get("adverts") or {},
            changeset["adverts"],
            vehicle_type,
            supplied_price_minimum,
            result,
        )
        if adverts_payload:
            result.payload["adverts"] = adverts_payload

    if changeset.get("metadata"):
        metadata_payload = _diff_metadata(original.get("metadata") or {}, changeset["metadata"], result)
        if metadata_payload:
            result.payload["metadata"] = metadata_payload

    if changeset.get("advertiser"):
        advertiser_payload = _diff_advertiser(original.get("advertiser") or {}, changeset["advertiser"], result)
        if advertiser_payload:
            result.payload["advertiser"] = advertiser_payload

    if changeset.get("vehicle"):
        vehicle_payload = _diff_vehicle(original.get("vehicle") or {}, changeset["vehicle"], result)
        if vehicle_payload:
            result.payload["vehicle"] = vehicle_payload

    if "features" in changeset:
        features_payload = _diff_features(original.get("features"), changeset["features"], result)
        if features_payload is not None:
            result.payload["features"] = features_payload

    logger.debug(f"Diff produced {len(result.changed_fields)} changed fields: {result.changed_fields}")
    return result


# Derived fields

def derive_price_fields(adverts: Optional[Dict[str, Any]], use_explicit_total: bool = True) -> Dict[str, Optional[Decimal]]:
    """
    Flattened price columns for an adverts sub-document.

    The explicit retailAdverts.totalPrice is trusted only when the adverts come
    from the Marketplace itself; for locally merged adverts it may predate the
    change, so the total is recomputed from the forecourt price and VAT status.
    """
    forecourt = to_money(_get(adverts, "forecourtPrice", "amountGBP"))
    explicit_total = to_money(_get(adverts, "retailAdverts", "totalPrice", "amountGBP")) if use_explicit_total else None

    if explicit_total is not None:
        total = explicit_total
    elif forecourt is None:
        total = None
    elif excludes_vat(adverts):
        total = (forecourt * VAT_UPLIFT).quantize(TWO_PLACES)
    else:
        total = forecourt

    return {"forecourt_price_gbp": forecourt, "total_price_gbp": total}


def derive_flattened_fields(
    adverts: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    vehicle: Optional[Dict[str, Any]] = None,
    use_explicit_total: bool = True,
) -> Dict[str, Any]:
    """Flattened columns derivable from whichever sub-documents are given"""
    fields: Dict[str, Any] = {}
    if adverts is not None:
        fields.update(derive_price_fields(adverts, use_explicit_total=use_explicit_total))
    if metadata is not None:
        fields["lifecycle_state"] = metadata.get("lifecycleState")
    if vehicle is not None:
        fields["registration"] = vehicle.get("registration")
        fields["make"] = vehicle.get("make")
        fields["model"] = vehicle.get("model")
    return fields


def build_cache_fields(item: Dict[str, Any]) -> Dict[str, Any]:
    """
    Cache columns for a complete stock record fetched from the Marketplace.

    Raises:
        ValidationError: If the record carries no metadata.stockId
    """
    stock_id = _get(item, "metadata", "stockId")
    if not stock_id:
        raise ValidationError("Marketplace stock record has no metadata.stockId")

    vehicle = deepcopy(item.get("vehicle") or {})
    adverts = deepcopy(item.get("adverts") or {})
    metadata = deepcopy(item.get("metadata") or {})

    features = item.get("features")

    fields = {
        "stock_id": str(stock_id),
        "vehicle_data": vehicle,
        "adverts_data": adverts,
        "metadata_raw": metadata,
        "advertiser_data": deepcopy(item.get("advertiser") or {}),
        "features_data": deepcopy(features) if isinstance(features, list) else [],
    }
    advertiser_id = _get(item, "advertiser", "advertiserId")
    if advertiser_id:
        fields["advertiser_id"] = str(advertiser_id)
    fields.update(derive_flattened_fields(adverts, metadata, vehicle, use_explicit_total=True))
    return fields


# Inbound reconciliation

def apply_response(
    original: Dict[str, Any],
    payload: Dict[str, Any],
    response: Optional[Dict[str, Any]] = None,
) -> ReconcileResult:
    """
    Fold a successful write back into the cached sub-documents.

    Args:
        original: Cached sub-documents before the write
        payload: What was sent to the Marketplace
        response: The Marketplace's response body, if any

    Returns:
        ReconcileResult whose record_fields are the StockCache columns to
        upsert (sub-documents plus recomputed flattened fields)
    """
    response = response if isinstance(response, dict) else {}
    record_fields: Dict[str, Any] = {}
    sources: Dict[str, str] = {}
    docs: Dict[str, Any] = {}

    for name, column in SUBDOCUMENT_COLUMNS.items():
        if _is_subdocument(name, response.get(name)):
            # Authoritative: the Marketplace may have normalised or recomputed values
            docs[name] = deepcopy(response[name])
            sources[name] = "response"
        elif _is_subdocument(name, payload.get(name)):
            docs[name] = SUBDOCUMENT_MERGERS[name](original.get(name), payload[name])
            sources[name] = "merged"
        else:
            continue
        record_fields[column] = docs[name]

    if "adverts" in docs:
        record_fields.update(
            derive_price_fields(docs["adverts"], use_explicit_total=sources["adverts"] == "response")
        )
    if "metadata" in docs:
        record_fields["lifecycle_state"] = docs["metadata"].get("lifecycleState")
    if "vehicle" in docs:
        record_fields.update(derive_flattened_fields(vehicle=docs["vehicle"]))

    logger.debug(f"Reconciled sub-documents: {sources}")
    return ReconcileResult(payload=payload, record_fields=record_fields, sources=sources)


def reconcile(
    original: Dict[str, Any],
    changeset: Dict[str, Any],
    response: Optional[Dict[str, Any]] = None,
    vehicle_type: Optional[str] = None,
    supplied_price_minimum: int = DEFAULT_SUPPLIED_PRICE_MINIMUM,
) -> ReconcileResult:
    """
    Diff a change-set and reconcile the (optional) Marketplace response in one go.

    Returns:
        ReconcileResult with the payload that would be sent and the new record fields
    """
    diff = diff_changeset(original, changeset, vehicle_type, supplied_price_minimum)
    result = apply_response(original, diff.payload, response)
    result.warnings = list(diff.warnings)
    return result

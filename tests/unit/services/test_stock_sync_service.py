from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import Settings
from app.core.exceptions import (
    InvalidCredentialsError,
    UpstreamRejectedError,
    UpstreamUnavailableError,
)
from app.core.utils import utc_now
from app.models.dealer import StoreConfig
from app.models.inventory_details import InventoryDetails, SaleDetails
from app.models.stock_cache import StockCache
from app.models.stock_sync_log import StockSyncLog
from app.schemas.stock import ListingRowUpdate
from app.services.marketplace.credentials import DealerCredentialLoader
from app.services.marketplace.token_cache import TokenCache
from app.services.stock_cache_service import StockCacheService
from app.services.stock_sync_service import StockSyncService
from app.services.vat_sync_service import VatSchemeSyncService

from tests.mocks.mock_marketplace import make_stock_item
from tests.mocks.seed_data import ADVERTISER_ID, OWNER_EMAIL, OWNER_ID, TEAM_EMAIL, cache_stock_item


async def load_row(db_session, stock_id="STK-1001"):
    db_session.expire_all()
    result = await db_session.execute(
        select(StockCache).where(StockCache.dealer_id == OWNER_ID, StockCache.stock_id == stock_id)
    )
    return result.scalars().first()


"""
1. Identity and Authentication Tests
"""

@pytest.mark.asyncio
async def test_resolve_identity_for_team_member(sync_service, store_owner):
    result = await sync_service.resolve_identity("user_team", TEAM_EMAIL)

    assert result.success is True
    assert result.data["effective_email"] == OWNER_EMAIL
    assert result.data["is_delegated"] is True


@pytest.mark.asyncio
async def test_resolve_identity_unknown_user(sync_service, store_owner):
    result = await sync_service.resolve_identity("user_stranger")

    assert result.success is False
    assert result.error.type == "CONFIG_NOT_FOUND"
    assert result.status_code == 404
    assert result.error.suggestions


@pytest.mark.asyncio
async def test_get_token(sync_service, fake_client):
    result = await sync_service.get_token(OWNER_EMAIL)

    assert result.success is True
    assert result.data["access_token"] == "token-1"
    assert fake_client.auth_calls == 1


@pytest.mark.asyncio
async def test_authentication_check_with_stored_keys(
    db_session, session_factory, store_owner, fake_client, limits_cache, settings
):
    token_cache = TokenCache(fake_client, DealerCredentialLoader(session_factory, settings))
    service = StockSyncService(db_session, token_cache, fake_client, limits_cache, settings)

    result = await service.test_authentication("user_team", TEAM_EMAIL)

    assert result.success is True
    assert result.data["effective_email"] == OWNER_EMAIL
    assert result.data["store_name"] == "Fordham Cars"
    # Delegated requests authenticate with the owner's keys
    assert fake_client.calls_to("authenticate")[0]["api_key"] == "owner-key"


@pytest.mark.asyncio
async def test_authentication_check_without_keys(
    db_session, session_factory, store_owner, fake_client, limits_cache, settings
):
    db_session.add(StoreConfig(email="nokeys@dealer.test", user_id="user_nokeys", advertisement_id="555"))
    await db_session.commit()
    token_cache = TokenCache(fake_client, DealerCredentialLoader(session_factory, settings))
    service = StockSyncService(db_session, token_cache, fake_client, limits_cache, settings)

    result = await service.test_authentication("user_nokeys")

    assert result.success is False
    assert result.error.type == "AUTHENTICATION_FAILED"
    assert result.error.message == "Missing AutoTrader API credentials"
    assert result.error.suggestions
    assert fake_client.auth_calls == 0


"""
2. Read Tests
"""

@pytest.mark.asyncio
async def test_fresh_record_served_from_cache(sync_service, owner_identity, cached_stock, fake_client):
    result = await sync_service.get_stock(owner_identity, "STK-1001")

    assert result.success is True
    assert result.data["from_cache"] is True
    assert result.data["record"]["stock_id"] == "STK-1001"
    assert fake_client.calls_to("get_stock_item") == []


@pytest.mark.asyncio
async def test_stale_record_is_refetched(db_session, sync_service, owner_identity, store_owner, fake_client):
    await cache_stock_item(db_session, OWNER_ID, make_stock_item(), fetched_at=utc_now() - timedelta(hours=200))
    fake_client.stock_items["STK-1001"] = make_stock_item(price=1500)

    result = await sync_service.get_stock(owner_identity, "STK-1001")

    assert result.data["from_cache"] is False
    assert result.data["record"]["is_stale"] is False
    assert Decimal(result.data["record"]["forecourt_price_gbp"]) == Decimal("1500.00")
    assert fake_client.calls_to("get_stock_item")[0]["advertiser_id"] == ADVERTISER_ID


@pytest.mark.asyncio
async def test_force_refresh_bypasses_cache(sync_service, owner_identity, cached_stock, fake_client):
    fake_client.stock_items["STK-1001"] = make_stock_item(lifecycle_state="SOLD")

    result = await sync_service.get_stock(owner_identity, "STK-1001", force_refresh=True)

    assert result.data["from_cache"] is False
    assert result.data["record"]["lifecycle_state"] == "SOLD"


@pytest.mark.asyncio
async def test_unavailable_upstream_serves_stale_copy(db_session, sync_service, owner_identity, store_owner, fake_client):
    await cache_stock_item(db_session, OWNER_ID, make_stock_item(), fetched_at=utc_now() - timedelta(hours=200))
    fake_client.errors["get_stock_item"] = UpstreamUnavailableError("AutoTrader is currently unavailable")

    result = await sync_service.get_stock(owner_identity, "STK-1001")

    assert result.success is True
    assert result.data["from_cache"] is True
    assert result.data["record"]["is_stale"] is True
    assert "AutoTrader unavailable" in result.warnings[0]


@pytest.mark.asyncio
async def test_unknown_stock(sync_service, owner_identity, store_owner):
    result = await sync_service.get_stock(owner_identity, "STK-404")

    assert result.success is False
    assert result.error.type == "NOT_FOUND"
    assert result.status_code == 404


@pytest.mark.asyncio
async def test_limits_are_cached_per_user(sync_service, owner_identity, store_owner, fake_client):
    fake_client.advertisers_response = {"results": [{
        "advertiserId": ADVERTISER_ID,
        "autotraderAdvertAllowances": [{"type": "Standard", "capacity": 75, "vehicleTypes": ["Car", "Van"]}],
    }]}

    first = await sync_service.get_limits(owner_identity)
    second = await sync_service.get_limits(owner_identity)

    assert first.data["listing_count"] == 75
    assert first.data["from_cache"] is False
    assert second.data["from_cache"] is True
    assert second.data["cached_at"] == first.data["last_updated"]
    assert len(fake_client.calls_to("get_advertisers")) == 1


"""
3. Write Tests
"""

@pytest.mark.asyncio
async def test_price_update_sends_only_the_change(db_session, sync_service, owner_identity, cached_stock, fake_client):
    changeset = {"adverts": {
        "forecourtPrice": {"amountGBP": 1200},
        "attentionGrabber": "Low miles",
        "retailAdverts": {"description": "One owner from new"},
    }}

    result = await sync_service.apply_stock_update(owner_identity, "STK-1001", changeset)

    assert result.success is True
    assert result.data["state"] == "CACHE_UPDATED"
    assert result.data["changed_fields"] == ["adverts.forecourtPrice"]
    update = fake_client.calls_to("update_stock")[0]
    assert update["payload"] == {"adverts": {"forecourtPrice": {"amountGBP": 1200}}}
    assert update["advertiser_id"] == ADVERTISER_ID

    row = await load_row(db_session)
    assert row.forecourt_price_gbp == Decimal("1200.00")
    assert row.total_price_gbp == Decimal("1200.00")
    assert row.adverts_data["retailAdverts"]["description"] == "One owner from new"


@pytest.mark.asyncio
async def test_response_document_is_cached(db_session, sync_service, owner_identity, cached_stock, fake_client):
    upstream_adverts = make_stock_item(price=1199)["adverts"]
    fake_client.update_response = {"adverts": upstream_adverts}

    result = await sync_service.apply_stock_update(owner_identity, "STK-1001", {"adverts": {"forecourtPrice": {"amountGBP": 1200}}})

    assert result.data["sources"] == {"adverts": "response"}
    row = await load_row(db_session)
    assert row.adverts_data == upstream_adverts
    assert row.forecourt_price_gbp == Decimal("1199.00")


@pytest.mark.asyncio
async def test_no_changes_skips_marketplace(sync_service, owner_identity, cached_stock, fake_client):
    result = await sync_service.apply_stock_update(owner_identity, "STK-1001", {"adverts": {"forecourtPrice": {"amountGBP": 1000}}})

    assert result.success is True
    assert result.data["message"] == "No changes detected"
    assert fake_client.calls_to("update_stock") == []


@pytest.mark.asyncio
@pytest.mark.parametrize("changeset", [
    {},
    {"advertiserId": "123"},
    {"adverts": {"forecourtPrice": {"amountGBP": "lots"}}},
    {"adverts": {"retailAdverts": {"autotraderAdvert": {"status": "MAYBE"}}}},
])
async def test_invalid_changeset(sync_service, owner_identity, cached_stock, fake_client, changeset):
    result = await sync_service.apply_stock_update(owner_identity, "STK-1001", changeset)

    assert result.success is False
    assert result.error.type == "VALIDATION_ERROR"
    assert result.status_code == 400
    assert fake_client.calls_to("update_stock") == []


@pytest.mark.asyncio
async def test_vehicle_update_is_sent_and_cached(db_session, sync_service, owner_identity, cached_stock, fake_client):
    result = await sync_service.apply_stock_update(owner_identity, "STK-1001", {"vehicle": {"colour": "Red"}})

    assert result.success is True
    assert result.data["changed_fields"] == ["vehicle.colour"]
    assert fake_client.calls_to("update_stock")[0]["payload"] == {"vehicle": {"colour": "Red"}}
    row = await load_row(db_session)
    assert row.vehicle_data["colour"] == "Red"
    assert row.vehicle_data["registration"] == "AB12CDE"


@pytest.mark.asyncio
async def test_advertiser_location_update(db_session, sync_service, owner_identity, cached_stock, fake_client):
    result = await sync_service.apply_stock_update(
        owner_identity, "STK-1001", {"advertiser": {"location": {"town": "Leeds"}}}
    )

    assert result.success is True
    sent = fake_client.calls_to("update_stock")[0]["payload"]["advertiser"]["location"]
    assert sent["town"] == "Leeds"
    assert sent["postCode"] == "WF1 1AA"
    row = await load_row(db_session)
    assert row.advertiser_data["location"]["town"] == "Leeds"
    assert row.advertiser_data["name"] == "Fordham Cars"


@pytest.mark.asyncio
async def test_features_update_replaces_cached_list(db_session, sync_service, owner_identity, cached_stock, fake_client):
    features = [{"name": "Panoramic roof", "type": "Optional"}]

    result = await sync_service.apply_stock_update(owner_identity, "STK-1001", {"features": features})

    assert result.success is True
    assert fake_client.calls_to("update_stock")[0]["payload"] == {"features": features}
    row = await load_row(db_session)
    assert row.features_data == features


@pytest.mark.asyncio
async def test_unknown_section_is_rejected(sync_service, owner_identity, cached_stock, fake_client):
    result = await sync_service.apply_stock_update(owner_identity, "STK-1001", {"highlights": [{"name": "Low miles"}]})

    assert result.success is False
    assert result.error.type == "VALIDATION_ERROR"
    assert fake_client.calls_to("update_stock") == []


@pytest.mark.asyncio
async def test_negative_price_is_rejected(sync_service, owner_identity, cached_stock):
    result = await sync_service.apply_stock_update(owner_identity, "STK-1001", {"adverts": {"forecourtPrice": {"amountGBP": -5}}})

    assert result.error.type == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_supplied_price_warning_does_not_fail_write(sync_service, owner_identity, cached_stock, fake_client):
    changeset = {"adverts": {"forecourtPrice": {"amountGBP": 1100}, "suppliedPrice": {"amountGBP": 20}}}

    result = await sync_service.apply_stock_update(owner_identity, "STK-1001", changeset)

    assert result.success is True
    assert "suppliedPrice" not in str(fake_client.calls_to("update_stock")[0]["payload"])
    assert any("Supplied price skipped" in w for w in result.warnings)


@pytest.mark.asyncio
async def test_uncached_stock_is_fetched_before_diffing(db_session, sync_service, owner_identity, store_owner, fake_client):
    fake_client.stock_items["STK-1001"] = make_stock_item()

    result = await sync_service.apply_stock_update(owner_identity, "STK-1001", {"metadata": {"lifecycleState": "SOLD"}})

    assert result.success is True
    assert len(fake_client.calls_to("get_stock_item")) == 1
    assert fake_client.calls_to("update_stock")[0]["payload"] == {"metadata": {"lifecycleState": "SOLD"}}
    row = await load_row(db_session)
    assert row.lifecycle_state == "SOLD"


@pytest.mark.asyncio
async def test_rejected_write_leaves_cache_untouched(db_session, sync_service, owner_identity, cached_stock, fake_client):
    warnings = [{"type": "ERROR", "feature": "forecourtPrice", "message": "Price below valuation floor"}]
    fake_client.errors["update_stock"] = UpstreamRejectedError(
        "Price below valuation floor", upstream_warnings=warnings, http_status=422,
    )

    result = await sync_service.apply_stock_update(owner_identity, "STK-1001", {"adverts": {"forecourtPrice": {"amountGBP": 1}}})

    assert result.success is False
    assert result.error.type == "UPSTREAM_REJECTED"
    assert result.error.upstream_warnings == warnings
    assert result.status_code == 422
    assert len(fake_client.calls_to("update_stock")) == 1
    row = await load_row(db_session)
    assert row.forecourt_price_gbp == Decimal("1000.00")


@pytest.mark.asyncio
async def test_rejected_token_is_invalidated(sync_service, token_cache, owner_identity, cached_stock, fake_client):
    fake_client.errors["update_stock"] = InvalidCredentialsError("AutoTrader rejected the API credentials")

    result = await sync_service.apply_stock_update(owner_identity, "STK-1001", {"adverts": {"forecourtPrice": {"amountGBP": 1200}}})

    assert result.error.type == "INVALID_CREDENTIALS"
    assert token_cache.peek(OWNER_EMAIL) is None


@pytest.mark.asyncio
async def test_cache_failure_after_successful_write(mocker, sync_service, owner_identity, cached_stock, fake_client):
    mocker.patch.object(StockCacheService, "upsert", side_effect=SQLAlchemyError("database is locked"))

    result = await sync_service.apply_stock_update(owner_identity, "STK-1001", {"adverts": {"forecourtPrice": {"amountGBP": 1200}}})

    assert result.success is True
    assert result.data["state"] == "RECONCILED"
    assert result.data["record"] is None
    assert "Stock cache update failed; the record will refresh on the next fetch" in result.warnings
    assert len(fake_client.calls_to("update_stock")) == 1


@pytest.mark.asyncio
async def test_vat_status_change_syncs_accounting_records(db_session, sync_service, owner_identity, cached_stock):
    db_session.add_all([
        InventoryDetails(dealer_id=OWNER_ID, stock_id="STK-1001", vat_scheme="includes"),
        SaleDetails(dealer_id=OWNER_ID, stock_id="STK-1001", vat_scheme="includes"),
    ])
    await db_session.commit()

    result = await sync_service.apply_stock_update(owner_identity, "STK-1001", {"adverts": {"forecourtPriceVatStatus": "Ex VAT"}})

    assert result.success is True
    assert result.warnings == []
    db_session.expire_all()
    inventory = (await db_session.execute(select(InventoryDetails))).scalars().one()
    sale = (await db_session.execute(select(SaleDetails))).scalars().one()
    assert inventory.vat_scheme == "excludes"
    assert sale.vat_scheme == "excludes"
    row = await load_row(db_session)
    assert row.total_price_gbp == Decimal("1200.00")


@pytest.mark.asyncio
async def test_vat_sync_failure_is_a_warning(mocker, sync_service, owner_identity, cached_stock):
    mocker.patch.object(VatSchemeSyncService, "sync", side_effect=SQLAlchemyError("deadlock detected"))

    result = await sync_service.apply_stock_update(owner_identity, "STK-1001", {"adverts": {"forecourtPriceVatStatus": "Ex VAT"}})

    assert result.success is True
    assert result.data["state"] == "CACHE_UPDATED"
    assert any(w.startswith("VAT scheme sync failed") for w in result.warnings)


@pytest.mark.asyncio
async def test_listing_row_update(sync_service, owner_identity, cached_stock, fake_client):
    row_update = ListingRowUpdate(stockId="STK-1001", price=1500, autotrader=False, locator=True)

    result = await sync_service.update_listing_row(owner_identity, row_update)

    assert result.success is True
    assert fake_client.calls_to("update_stock")[0]["payload"] == {"adverts": {
        "forecourtPrice": {"amountGBP": 1500},
        "retailAdverts": {
            "autotraderAdvert": {"status": "NOT_PUBLISHED"},
            "locatorAdvert": {"status": "PUBLISHED"},
        },
    }}


@pytest.mark.asyncio
async def test_listing_row_update_without_changes(sync_service, owner_identity, cached_stock):
    result = await sync_service.update_listing_row(owner_identity, ListingRowUpdate(stockId="STK-1001", price=0))

    assert result.success is False
    assert result.error.type == "VALIDATION_ERROR"


"""
4. Refresh Tests
"""

@pytest.mark.asyncio
async def test_refresh_pages_through_stock(db_session, sync_service, owner_identity, cached_stock, fake_client):
    fake_client.stock_pages = [
        {"results": [make_stock_item(stock_id="STK-2001"), make_stock_item(stock_id="STK-2002")], "totalPages": 2},
        {"results": [make_stock_item(stock_id="STK-2003", price=2500)], "totalPages": 2},
    ]

    result = await sync_service.refresh_stock(owner_identity)

    assert result.success is True
    assert result.data["status"] == "SUCCESS"
    assert result.data["pages_fetched"] == 2
    assert result.data["records_upserted"] == 3
    assert result.data["records_marked_missing"] == 1

    # Dropped off AutoTrader: flagged, not deleted
    row = await load_row(db_session, "STK-1001")
    assert row.missing_upstream is True
    assert (await load_row(db_session, "STK-2003")).forecourt_price_gbp == Decimal("2500.00")

    log = (await db_session.execute(select(StockSyncLog))).scalars().one()
    assert log.status == "SUCCESS"
    assert log.completed_at is not None


@pytest.mark.asyncio
async def test_refresh_skips_records_without_stock_id(db_session, sync_service, owner_identity, store_owner, fake_client):
    broken = make_stock_item()
    del broken["metadata"]["stockId"]
    fake_client.stock_pages = [{"results": [make_stock_item(stock_id="STK-3001"), broken], "totalResults": 2}]

    result = await sync_service.refresh_stock(owner_identity)

    assert result.data["status"] == "PARTIAL"
    assert result.data["records_processed"] == 2
    assert result.data["records_upserted"] == 1
    assert result.warnings[0].startswith("Skipped record")


@pytest.mark.asyncio
async def test_refresh_failure_is_logged(db_session, sync_service, owner_identity, cached_stock, fake_client):
    fake_client.errors["list_stock"] = UpstreamUnavailableError("AutoTrader is currently unavailable")

    result = await sync_service.refresh_stock(owner_identity)

    assert result.success is False
    assert result.error.type == "UPSTREAM_UNAVAILABLE"
    db_session.expire_all()
    log = (await db_session.execute(select(StockSyncLog))).scalars().one()
    assert log.status == "ERROR"
    assert log.error_message == "AutoTrader is currently unavailable"
    row = await load_row(db_session, "STK-1001")
    assert row.missing_upstream is False


@pytest.mark.asyncio
async def test_refresh_stopped_by_page_limit_keeps_unread_records(
    db_session, token_cache, fake_client, limits_cache, owner_identity, cached_stock
):
    # STK-1001 is still listed, but on a page the capped refresh never reads
    fake_client.stock_pages = [
        {"results": [make_stock_item(stock_id="STK-2001")], "totalPages": 2},
        {"results": [make_stock_item(stock_id="STK-1001")], "totalPages": 2},
    ]
    service = StockSyncService(db_session, token_cache, fake_client, limits_cache, Settings(STOCK_MAX_PAGES=1))

    result = await service.refresh_stock(owner_identity)

    assert result.success is True
    assert result.data["status"] == "PARTIAL"
    assert result.data["complete"] is False
    assert result.data["pages_fetched"] == 1
    assert result.data["records_marked_missing"] == 0
    assert "no records were marked missing upstream" in result.warnings[0]
    assert len(fake_client.calls_to("list_stock")) == 1

    row = await load_row(db_session, "STK-1001")
    assert row.missing_upstream is False
    log = (await db_session.execute(select(StockSyncLog))).scalars().one()
    assert log.status == "PARTIAL"
    assert log.records_marked_missing == 0


"""
5. Cache Maintenance Tests
"""

@pytest.mark.asyncio
async def test_cache_stats_include_process_caches(sync_service, owner_identity, cached_stock):
    result = await sync_service.get_cache_stats(owner_identity)

    assert result.data["total_records"] == 1
    assert result.data["token_cache"]["cached_identities"] == 0
    assert result.data["limits_cache"]["name"] == "limits"


@pytest.mark.asyncio
async def test_clear_stale_rejects_negative_age(sync_service, owner_identity, store_owner):
    result = await sync_service.clear_stale(owner_identity, -1)

    assert result.error.type == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_settings_drive_staleness(db_session, token_cache, fake_client, limits_cache, owner_identity, store_owner):
    await cache_stock_item(db_session, OWNER_ID, make_stock_item(), fetched_at=utc_now() - timedelta(hours=2))
    service = StockSyncService(db_session, token_cache, fake_client, limits_cache, Settings(STOCK_STALE_AFTER_HOURS=1))
    fake_client.stock_items["STK-1001"] = make_stock_item()

    result = await service.get_stock(owner_identity, "STK-1001")

    assert result.data["from_cache"] is False

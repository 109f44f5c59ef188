# tests/test_routes/test_temp_data_routes.py
import pytest


@pytest.mark.asyncio
async def test_store_and_fetch_temp_data(api_client):
    headers = {"X-User-Id": "user_owner"}

    created = await api_client.post("/api/temp-data", headers=headers, json={"data": {"invoice": {"total": 1200}}})

    assert created.status_code == 201
    temp_id = created.json()["data"]["tempId"]

    fetched = await api_client.get(f"/api/temp-data/{temp_id}", headers=headers)

    assert fetched.status_code == 200
    assert fetched.json()["data"]["data"] == {"invoice": {"total": 1200}}


@pytest.mark.asyncio
async def test_temp_data_is_private_to_its_owner(api_client):
    created = await api_client.post("/api/temp-data", headers={"X-User-Id": "user_owner"}, json={"data": {"a": 1}})
    temp_id = created.json()["data"]["tempId"]

    response = await api_client.get(f"/api/temp-data/{temp_id}", headers={"X-User-Id": "user_team"})

    assert response.status_code == 404
    assert response.json()["error"]["type"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_expired_temp_data(api_client, temp_data_cache):
    created = await api_client.post("/api/temp-data", headers={"X-User-Id": "user_owner"}, json={"data": {"a": 1}})
    temp_id = created.json()["data"]["tempId"]
    temp_data_cache.delete(temp_id)

    response = await api_client.get(f"/api/temp-data/{temp_id}", headers={"X-User-Id": "user_owner"})

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_temp_data_requires_user(api_client):
    response = await api_client.post("/api/temp-data", json={"data": {}})

    assert response.status_code == 401

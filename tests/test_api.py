import asyncio
import socket
from datetime import timedelta

import aiohttp
import pytest
from aiohttp.test_utils import TestClient, TestServer

from dmndproxy.api import (
    POOL_STATUS_KEY,
    PROXY_STATE_KEY,
    AggregateStats,
    ApiResponse,
    aggregate_stats,
    create_app,
    start,
)
from dmndproxy.stats import DownstreamConnectionStats, StatsSender


def test_success_envelope():
    assert ApiResponse.success("Proxy OK").to_dict() == {
        "success": True,
        "message": None,
        "data": "Proxy OK",
    }


def test_error_envelope():
    assert ApiResponse.error("Pool information unavailable").to_dict() == {
        "success": False,
        "message": "Pool information unavailable",
        "data": None,
    }


def test_envelope_converts_dataclasses():
    entry = DownstreamConnectionStats(device_name="rig")
    data = ApiResponse.success({5: entry}).to_dict()["data"]
    assert data["5"]["device_name"] == "rig"


def test_aggregate_of_nothing():
    result = aggregate_stats({})
    assert result == AggregateStats(0, 0.0, 0, 0, 0.0)


def test_aggregate_single_entry_matches_entry():
    entry = DownstreamConnectionStats(
        hashrate=2.5e12, accepted_shares=7, rejected_shares=2, current_difficulty=64.0
    )
    result = aggregate_stats({1: entry})
    assert result.total_connected_device == 1
    assert result.aggregate_hashrate == entry.hashrate
    assert result.aggregate_accepted_shares == entry.accepted_shares
    assert result.aggregate_rejected_shares == entry.rejected_shares
    assert result.aggregate_diff == entry.current_difficulty


def test_aggregate_is_additive():
    a = DownstreamConnectionStats(hashrate=1e12, accepted_shares=3, current_difficulty=8.0)
    b = DownstreamConnectionStats(hashrate=3e12, rejected_shares=4, current_difficulty=16.0)
    both = aggregate_stats({1: a, 2: b})
    first, second = aggregate_stats({1: a}), aggregate_stats({2: b})
    assert both.total_connected_device == first.total_connected_device + second.total_connected_device
    assert both.aggregate_hashrate == first.aggregate_hashrate + second.aggregate_hashrate
    assert both.aggregate_accepted_shares == first.aggregate_accepted_shares + second.aggregate_accepted_shares
    assert both.aggregate_rejected_shares == first.aggregate_rejected_shares + second.aggregate_rejected_shares
    assert both.aggregate_diff == first.aggregate_diff + second.aggregate_diff


@pytest.mark.asyncio
async def test_health_ok():
    sender = StatsSender()
    async with TestClient(TestServer(create_app(sender))) as client:
        response = await client.get("/api/health")
        assert response.status == 200
        assert (await response.json())["data"] == "Proxy OK"
    sender.close()


@pytest.mark.asyncio
async def test_health_down():
    sender = StatsSender()
    app = create_app(sender)
    app[PROXY_STATE_KEY] = lambda: (True, "Pool down")
    async with TestClient(TestServer(app)) as client:
        response = await client.get("/api/health")
        body = await response.json()
        assert response.status == 503
        assert body["success"] is False
        assert body["message"] == "Pool down"
    sender.close()


@pytest.mark.asyncio
async def test_health_unknown_state():
    sender = StatsSender()
    app = create_app(sender)
    app[PROXY_STATE_KEY] = lambda: (True, None)
    async with TestClient(TestServer(app)) as client:
        response = await client.get("/api/health")
        assert response.status == 503
        assert (await response.json())["message"] == "Unknown proxy state"
    sender.close()


@pytest.mark.asyncio
async def test_pool_info_unavailable():
    sender = StatsSender()
    async with TestClient(TestServer(create_app(sender))) as client:
        response = await client.get("/api/pool/info")
        assert response.status == 404
        assert (await response.json())["message"] == "Pool information unavailable"
    sender.close()


@pytest.mark.asyncio
async def test_pool_info_available():
    sender = StatsSender()
    app = create_app(sender)
    app[POOL_STATUS_KEY] = lambda: (("127.0.0.1", 20000), timedelta(milliseconds=15))
    async with TestClient(TestServer(app)) as client:
        response = await client.get("/api/pool/info")
        body = await response.json()
        assert response.status == 200
        assert body["data"] == {"address": "127.0.0.1:20000", "latency": "15"}
    sender.close()


@pytest.mark.asyncio
async def test_miner_stats():
    sender = StatsSender()
    sender.setup_stats(7)
    sender.update_device_name(7, "rig-7")
    sender.update_accepted_shares(7)
    async with TestClient(TestServer(create_app(sender))) as client:
        response = await client.get("/api/stats/miners")
        body = await response.json()
        assert response.status == 200
        assert body["data"]["7"]["device_name"] == "rig-7"
        assert body["data"]["7"]["accepted_shares"] == 1
    sender.close()


@pytest.mark.asyncio
async def test_aggregate_endpoint():
    sender = StatsSender()
    sender.setup_stats(1)
    sender.setup_stats(2)
    sender.update_rejected_shares(2)
    async with TestClient(TestServer(create_app(sender))) as client:
        response = await client.get("/api/stats/aggregate")
        data = (await response.json())["data"]
        expected = aggregate_stats(await sender.collect_stats())
        assert response.status == 200
        assert data["total_connected_device"] == expected.total_connected_device
        assert data["aggregate_rejected_shares"] == expected.aggregate_rejected_shares
    sender.close()


@pytest.mark.asyncio
async def test_stats_failure_reports_500():
    sender = StatsSender()
    sender.close()
    async with TestClient(TestServer(create_app(sender))) as client:
        for path in ("/api/stats/miners", "/api/stats/aggregate"):
            response = await client.get(path)
            body = await response.json()
            assert response.status == 500
            assert body["message"].startswith("Failed to collect stats:")


@pytest.mark.asyncio
async def test_system_stats():
    sender = StatsSender()
    async with TestClient(TestServer(create_app(sender))) as client:
        response = await client.get("/api/stats/system")
        data = (await response.json())["data"]
        assert response.status == 200
        assert len(data["cpu_usage_%"].split(".")[1]) == 3
        assert data["memory_usage_bytes"] > 0
    sender.close()


def _free_port():
    with socket.socket() as probe:
        probe.bind(("127.0.0.1", 0))
        return probe.getsockname()[1]


@pytest.mark.asyncio
async def test_start_serves_api():
    sender = StatsSender()
    port = _free_port()
    task = asyncio.create_task(start(sender, str(port)))
    status = None
    try:
        async with aiohttp.ClientSession() as session:
            for _ in range(50):
                try:
                    async with session.get(f"http://127.0.0.1:{port}/api/health") as response:
                        status = response.status
                        break
                except aiohttp.ClientConnectionError:
                    await asyncio.sleep(0.05)
        assert status == 200
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        sender.close()


@pytest.mark.asyncio
async def test_start_rejects_bad_port():
    sender = StatsSender()
    with pytest.raises(ValueError):
        await start(sender, "not-a-port")
    sender.close()
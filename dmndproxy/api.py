"""HTTP API that reports proxy health, pool information and miner statistics."""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from aiohttp import web

from dmndproxy.config import DEFAULT_API_SERVER_PORT
from dmndproxy.stats import DownstreamConnectionStats, StatsSender
from dmndproxy.system import get_cpu_and_memory_usage

STATS_SENDER_KEY = web.AppKey("stats_sender", StatsSender)
# Callable returning (pool address or None, latency as timedelta or None).
POOL_STATUS_KEY = web.AppKey("pool_status", object)
# Callable returning (proxy is down, description of the failing states or None).
PROXY_STATE_KEY = web.AppKey("proxy_state", object)


def _plain(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    return value


@dataclass(frozen=True)
class ApiResponse:
    """Envelope for every API reply."""

    success: bool
    message: str | None = None
    data: Any = None

    @classmethod
    def success(cls, data: Any) -> ApiResponse:
        return cls(success=True, message=None, data=data)

    @classmethod
    def error(cls, message: str | None) -> ApiResponse:
        return cls(success=False, message=message, data=None)

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "message": self.message, "data": _plain(self.data)}


@dataclass(frozen=True)
class AggregateStats:
    """Totals across all connected downstream devices."""

    total_connected_device: int
    aggregate_hashrate: float
    aggregate_accepted_shares: int
    aggregate_rejected_shares: int
    aggregate_diff: float


def aggregate_stats(stats: Mapping[int, DownstreamConnectionStats]) -> AggregateStats:
    """Sum the statistics of every connection."""
    entries = list(stats.values())
    return AggregateStats(
        total_connected_device=len(entries),
        aggregate_hashrate=sum(float(entry.hashrate) for entry in entries),
        aggregate_accepted_shares=sum(entry.accepted_shares for entry in entries),
        aggregate_rejected_shares=sum(entry.rejected_shares for entry in entries),
        aggregate_diff=sum(float(entry.current_difficulty) for entry in entries),
    )


def _reply(response: ApiResponse, status: int = 200) -> web.Response:
    return web.json_response(response.to_dict(), status=status)


def _format_address(address: Any) -> str:
    if isinstance(address, tuple):
        host, port = address[0], address[1]
        return f"[{host}]:{port}" if ":" in str(host) else f"{host}:{port}"
    return str(address)


async def _collect(request: web.Request) -> dict[int, DownstreamConnectionStats]:
    return await request.app[STATS_SENDER_KEY].collect_stats()


async def _downstream_stats(request: web.Request) -> web.Response:
    try:
        stats = await _collect(request)
    except RuntimeError as exc:
        return _reply(ApiResponse.error(f"Failed to collect stats: {exc}"), 500)
    return _reply(ApiResponse.success(stats))


async def _system_stats(request: web.Request) -> web.Response:
    cpu, memory = await get_cpu_and_memory_usage()
    data = {"cpu_usage_%": f"{cpu:.3f}", "memory_usage_bytes": memory}
    return _reply(ApiResponse.success(data))


async def _aggregate(request: web.Request) -> web.Response:
    try:
        stats = await _collect(request)
    except RuntimeError as exc:
        return _reply(ApiResponse.error(f"Failed to collect stats: {exc}"), 500)
    return _reply(ApiResponse.success(aggregate_stats(stats)))


async def _pool_info(request: web.Request) -> web.Response:
    address, latency = request.app[POOL_STATUS_KEY]()
    if address is None or latency is None:
        return _reply(ApiResponse.error("Pool information unavailable"), 404)
    millis = latency // timedelta(milliseconds=1)
    data = {"address": _format_address(address), "latency": str(millis)}
    return _reply(ApiResponse.success(data))


async def _health_check(request: web.Request) -> web.Response:
    is_down, states = request.app[PROXY_STATE_KEY]()
    if not is_down and states is None:
        return _reply(ApiResponse.success("Proxy OK"))
    if is_down and states is not None:
        return _reply(ApiResponse.error(states), 503)
    return _reply(ApiResponse.error("Unknown proxy state"), 503)


def create_app(stats_sender: StatsSender) -> web.Application:
    """Build the API application; pool and proxy state providers may be replaced."""
    app = web.Application()
    app[STATS_SENDER_KEY] = stats_sender
    app[POOL_STATUS_KEY] = lambda: (None, None)
    app[PROXY_STATE_KEY] = lambda: (False, None)
    app.router.add_get("/api/health", _health_check)
    app.router.add_get("/api/pool/info", _pool_info)
    app.router.add_get("/api/stats/miners", _downstream_stats)
    app.router.add_get("/api/stats/aggregate", _aggregate)
    app.router.add_get("/api/stats/system", _system_stats)
    return app


async def start(stats_sender: StatsSender, port: str | int = DEFAULT_API_SERVER_PORT) -> None:
    """Serve the API on all interfaces until cancelled."""
    try:
        port_number = int(port)
    except ValueError:
        raise ValueError(f"Invalid server address: 0.0.0.0:{port}") from None
    runner = web.AppRunner(create_app(stats_sender))
    await runner.setup()
    try:
        site = web.TCPSite(runner, "0.0.0.0", port_number)
        await site.start()
        print(f"API Server listening on port {port}")
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
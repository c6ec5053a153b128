"""Proxy configuration gathered from the command line, a TOML file and the environment."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import socket
import struct
import sys
import tomllib
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_SV1_HASHPOWER = 100e12
DEFAULT_CONFIG_FILE = "config.toml"
DEFAULT_INTERVAL_MS = 120_000
DEFAULT_DELAY = 0
DEFAULT_API_SERVER_PORT = "3001"
DEFAULT_SIGNATURE = "DDxDD"
LOCAL_POOL_ADDRESS = "127.0.0.1:20000"
POOL_URLS_PATH = "/api/pool/urls"

VALID_LOG_LEVELS = frozenset({"trace", "debug", "info", "warn", "error", "off"})

_FETCH_RETRIES = 8
_RETRY_DELAY_SECONDS = 3.0
_REQUEST_TIMEOUT_SECONDS = 15.0
_F32_MAX = 3.4028234663852886e38

_HASHRATE_FORMAT_HINT = "Expected format: '<number><unit>' (e.g., '10T', '2.5P', '5E')"

# Expected TOML value types; a file holding any other type is ignored as a whole.
_CONFIG_FILE_TYPES: dict[str, type] = {
    "token": str,
    "tp_address": str,
    "interval": int,
    "delay": int,
    "downstream_hashrate": str,
    "loglevel": str,
    "nc_loglevel": str,
    "sv1_log": bool,
    "staging": bool,
    "local": bool,
    "testnet3": bool,
    "listening_addr": str,
    "api_server_port": str,
    "monitor": bool,
    "auto_update": bool,
}


class HashUnit(Enum):
    """Hashrate magnitude suffixes."""

    TERA = "T"
    PETA = "P"
    EXA = "E"

    def multiplier(self) -> float:
        """Number of hashes per second that one of this unit stands for."""
        return {HashUnit.TERA: 1e12, HashUnit.PETA: 1e15, HashUnit.EXA: 1e18}[self]

    @classmethod
    def from_str(cls, s: str) -> HashUnit | None:
        """Return the unit for a suffix such as ``"T"`` (any case), or None."""
        try:
            return cls(s.upper())
        except ValueError:
            return None


def _to_f32(value: float) -> float:
    """Round a float to single precision, overflowing to infinity."""
    try:
        return struct.unpack("f", struct.pack("f", value))[0]
    except OverflowError:
        return float("inf") if value > 0 else float("-inf")


def format_hashrate(hashrate: float) -> str:
    """Render a hashrate in h/s with the largest fitting unit and two decimals."""
    if hashrate >= 1e18:
        return f"{hashrate / 1e18:.2f}E"
    if hashrate >= 1e15:
        return f"{hashrate / 1e15:.2f}P"
    if hashrate >= 1e12:
        return f"{hashrate / 1e12:.2f}T"
    return f"{hashrate:.2f}"


def parse_hashrate(hashrate_str: str) -> float:
    """Parse a value such as ``"10T"`` or ``"2.5P"`` into h/s.

    Raises ValueError when the text is empty, the number or unit is invalid,
    or the result does not fit a single-precision float.
    """
    logger.info("Received hashrate: '%s'", hashrate_str)
    text = hashrate_str.strip()
    if not text:
        raise ValueError(f"Hashrate cannot be empty. {_HASHRATE_FORMAT_HINT}")

    unit_text, number_text = text[-1], text[:-1]
    if number_text != number_text.strip() or "_" in number_text:
        raise ValueError(f"Invalid number '{number_text}'. {_HASHRATE_FORMAT_HINT}")
    try:
        number = _to_f32(float(number_text))
    except ValueError:
        raise ValueError(f"Invalid number '{number_text}'. {_HASHRATE_FORMAT_HINT}") from None

    unit = HashUnit.from_str(unit_text)
    if unit is None:
        raise ValueError(
            f"Invalid unit '{unit_text}'. Expected 'T' (Terahash), 'P' (Petahash), "
            "or 'E' (Exahash). Example: '10T', '2.5P', '5E'"
        )

    hashrate = _to_f32(number * unit.multiplier())
    if hashrate != hashrate or abs(hashrate) == float("inf"):
        raise ValueError("Hashrate too large or invalid")
    logger.info("Parsed hashrate: %s h/s", hashrate)
    return hashrate


def _split_host_port(addr: str) -> tuple[str, int]:
    host, sep, port_text = addr.rpartition(":")
    if not sep or not host:
        raise ValueError("invalid socket address")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    if not port_text.isdigit():
        raise ValueError("invalid port value")
    port = int(port_text)
    if port > 0xFFFF:
        raise ValueError("invalid port value")
    return host, port


def parse_address(addr: str) -> tuple[str, int] | None:
    """Resolve ``host:port`` to the first matching ``(ip, port)``, or None."""
    try:
        host, port = _split_host_port(addr)
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except (ValueError, OSError, UnicodeError) as exc:
        logger.error("Failed to parse address '%s': %s", addr, exc)
        return None
    if not infos:
        logger.error("Failed to parse address: %s", addr)
        return None
    sockaddr = infos[0][4]
    return sockaddr[0], sockaddr[1]


def _hashrate_argument(value: str) -> float:
    try:
        return parse_hashrate(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _u64_argument(value: str) -> int:
    parsed = _parse_u64(value)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"invalid unsigned integer: '{value}'")
    return parsed


def _parse_u64(value: str) -> int | None:
    if not value.isdigit() or not value.isascii():
        return None
    parsed = int(value)
    return parsed if parsed < 2**64 else None


def _parse_f32(value: str) -> float | None:
    if value != value.strip() or "_" in value:
        return None
    try:
        return _to_f32(float(value))
    except ValueError:
        return None


def build_parser() -> argparse.ArgumentParser:
    """Command-line options understood by the proxy."""
    parser = argparse.ArgumentParser(prog="dmnd-client")
    parser.add_argument("--staging", action="store_true")
    parser.add_argument("--testnet3", action="store_true")
    parser.add_argument("--local", action="store_true")
    parser.add_argument("-d", "--d", dest="downstream_hashrate", type=_hashrate_argument)
    parser.add_argument("-l", "--loglevel", dest="loglevel")
    parser.add_argument("-n", "--nc", dest="noise_connection_log")
    parser.add_argument("--sv1_loglevel", action="store_true")
    parser.add_argument("--file-logging", dest="file_logging", action="store_true")
    parser.add_argument("--delay", type=_u64_argument)
    parser.add_argument("-i", "--interval", dest="adjustment_interval", type=_u64_argument)
    parser.add_argument("--token")
    parser.add_argument("--tp-address", dest="tp_address")
    parser.add_argument("--listening-addr", dest="listening_addr")
    parser.add_argument("-c", "--config", dest="config_file", type=Path)
    parser.add_argument("-s", "--api-server-port", dest="api_server_port")
    parser.add_argument("-m", "--monitor", action="store_true")
    parser.add_argument("-u", "--auto-update", dest="auto_update", action="store_true")
    parser.add_argument("--signature")
    return parser


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError):
        return {}
    for key, expected in _CONFIG_FILE_TYPES.items():
        if key not in data:
            continue
        value = data[key]
        if expected is int:
            if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value < 2**64:
                return {}
        elif not isinstance(value, expected):
            return {}
    return data


def _first(*values: Any) -> Any:
    return next((value for value in values if value is not None), None)


def _signature_from(raw: str | None) -> str:
    if raw is None:
        print(f"Signature not provided, using {DEFAULT_SIGNATURE}")
        return DEFAULT_SIGNATURE
    if len(raw) == 2:
        print(f"Signature provided: DDx{raw}")
        return f"DDx{raw}"
    print(f"Invalid signature provided, using {DEFAULT_SIGNATURE}")
    return DEFAULT_SIGNATURE


@dataclass(frozen=True)
class Configuration:
    """Resolved proxy settings."""

    token: str | None = None
    tp_address: str | None = None
    interval: int = DEFAULT_INTERVAL_MS
    delay: int = DEFAULT_DELAY
    downstream_hashrate: float = DEFAULT_SV1_HASHPOWER
    loglevel: str = "info"
    nc_loglevel: str = "off"
    sv1_log: bool = False
    file_logging: bool = False
    staging: bool = False
    testnet3: bool = False
    local: bool = False
    listening_addr: str | None = None
    api_server_port: str = DEFAULT_API_SERVER_PORT
    monitor: bool = False
    auto_update: bool = True
    signature: str = DEFAULT_SIGNATURE
    production_url: str | None = None
    staging_url: str | None = None
    testnet3_url: str | None = None

    @classmethod
    def load(
        cls,
        argv: Sequence[str] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> Configuration:
        """Build settings with precedence command line > config file > environment."""
        env = os.environ if environ is None else environ
        args = build_parser().parse_args(argv)
        file = _read_config_file(args.config_file or Path(DEFAULT_CONFIG_FILE))

        token = _first(args.token, file.get("token"), env.get("TOKEN"))
        print(f"User Token: {token}")

        signature = _signature_from(args.signature)

        tp_address = _first(args.tp_address, file.get("tp_address"), env.get("TP_ADDRESS"))

        env_interval = env.get("INTERVAL")
        interval = _first(
            args.adjustment_interval,
            file.get("interval"),
            _parse_u64(env_interval) if env_interval is not None else None,
            DEFAULT_INTERVAL_MS,
        )

        env_delay = env.get("DELAY")
        delay = _first(
            args.delay,
            file.get("delay"),
            _parse_u64(env_delay) if env_delay is not None else None,
            DEFAULT_DELAY,
        )

        file_hashrate = None
        if file.get("downstream_hashrate") is not None:
            try:
                file_hashrate = parse_hashrate(file["downstream_hashrate"])
            except ValueError:
                file_hashrate = None
        env_hashrate = env.get("DOWNSTREAM_HASHRATE")
        expected_hashrate = _first(
            args.downstream_hashrate,
            file_hashrate,
            _parse_f32(env_hashrate) if env_hashrate is not None else None,
        )
        if expected_hashrate is not None:
            downstream_hashrate = expected_hashrate
            print(f"Using downstream hashrate: {format_hashrate(expected_hashrate)}h/s")
        else:
            downstream_hashrate = DEFAULT_SV1_HASHPOWER
            print(
                "No downstream hashrate provided, using default value: "
                f"{format_hashrate(DEFAULT_SV1_HASHPOWER)}h/s"
            )

        # The environment fallback for the listening address shares its
        # variable with the downstream hashrate setting.
        listening_addr = _first(
            args.listening_addr, file.get("listening_addr"), env.get("DOWNSTREAM_HASHRATE")
        )
        api_server_port = _first(
            args.api_server_port,
            file.get("api_server_port"),
            env.get("API_SERVER_PORT"),
            DEFAULT_API_SERVER_PORT,
        )
        loglevel = _first(args.loglevel, file.get("loglevel"), env.get("LOGLEVEL"), "info")
        nc_loglevel = _first(
            args.noise_connection_log, file.get("nc_loglevel"), env.get("NC_LOGLEVEL"), "off"
        )

        def flag(cli: bool, key: str | None, var: str, default: bool = False) -> bool:
            from_file = file.get(key, default) if key is not None else False
            return cli or from_file or var in env

        return cls(
            token=token,
            tp_address=tp_address,
            interval=interval,
            delay=delay,
            downstream_hashrate=downstream_hashrate,
            loglevel=loglevel,
            nc_loglevel=nc_loglevel,
            sv1_log=flag(args.sv1_loglevel, "sv1_log", "SV1_LOGLEVEL"),
            file_logging=flag(args.file_logging, None, "FILE_LOGGING"),
            staging=flag(args.staging, "staging", "STAGING"),
            testnet3=flag(args.testnet3, "testnet3", "TESTNET3"),
            local=flag(args.local, "local", "LOCAL"),
            listening_addr=listening_addr,
            api_server_port=api_server_port,
            monitor=flag(args.monitor, "monitor", "MONITOR"),
            auto_update=flag(args.auto_update, "auto_update", "AUTO_UPDATE", default=True),
            signature=signature,
            production_url=env.get("PRODUCTION_URL"),
            staging_url=env.get("STAGING_URL"),
            testnet3_url=env.get("TESTNET3_URL"),
        )

    def log_level(self) -> str:
        """The configured log level, or ``"info"`` when it is not recognised."""
        if self.loglevel.lower() in VALID_LOG_LEVELS:
            return self.loglevel
        print(f"Invalid log level '{self.loglevel}'. Defaulting to 'info'.", file=sys.stderr)
        return "info"

    def nc_log_level(self) -> str:
        """The noise-connection log level, or ``"off"`` when it is not recognised."""
        if self.nc_loglevel in VALID_LOG_LEVELS:
            return self.nc_loglevel
        print(
            f"Invalid log level for noise_connection '{self.nc_loglevel}' Defaulting to 'off'.",
            file=sys.stderr,
        )
        return "off"

    def environment(self) -> str:
        """One of ``staging``, ``local``, ``testnet3`` or ``production``."""
        if self.staging:
            return "staging"
        if self.local:
            return "local"
        if self.testnet3:
            return "testnet3"
        return "production"

    def pool_endpoint(self) -> str:
        """URL that lists the pool addresses for the selected network."""
        if self.staging:
            name, base = "staging", self.staging_url
        elif self.testnet3:
            name, base = "testnet3", self.testnet3_url
        else:
            name, base = "production", self.production_url
        if not base:
            raise ValueError(f"No base URL configured for the {name} environment")
        return f"{base.rstrip('/')}{POOL_URLS_PATH}"


async def _post_with_retries(
    session: aiohttp.ClientSession, endpoint: str, token: str
) -> aiohttp.ClientResponse:
    timeout = aiohttp.ClientTimeout(total=_REQUEST_TIMEOUT_SECONDS)
    retries = _FETCH_RETRIES
    while True:
        try:
            return await session.post(endpoint, json={"token": token}, timeout=timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Failed to fetch pool urls: %s", exc)
            if retries == 0:
                raise
            retries -= 1
            logger.info("Retrying in 3 seconds...")
            await asyncio.sleep(_RETRY_DELAY_SECONDS)


def _pool_entries(payload: Any) -> list[tuple[str, int]]:
    if not isinstance(payload, list):
        raise ValueError("Failed to parse pool urls: expected a list")
    entries = []
    for item in payload:
        if not isinstance(item, dict):
            raise ValueError("Failed to parse pool urls: expected objects")
        host, port = item.get("host"), item.get("port")
        if not isinstance(host, str):
            raise ValueError("Failed to parse pool urls: invalid host")
        if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= 0xFFFF:
            raise ValueError("Failed to parse pool urls: invalid port")
        entries.append((host, port))
    return entries


async def fetch_pool_urls(config: Configuration) -> list[tuple[str, int]]:
    """Ask the pool service for its addresses and resolve them.

    In local mode the fixed local address is returned. Raises ValueError when
    no token is set or the reply cannot be parsed, and the client error once
    every retry has failed.
    """
    if config.local:
        logger.info("Running in local mode, using hardcoded address %s", LOCAL_POOL_ADDRESS)
        address = parse_address(LOCAL_POOL_ADDRESS)
        if address is None:
            raise ValueError("Invalid local address")
        return [address]

    endpoint = config.pool_endpoint()
    logger.info("Fetching pool URLs from: %s", endpoint)
    if config.token is None:
        raise ValueError("TOKEN is not set")

    async with aiohttp.ClientSession() as session:
        response = await _post_with_retries(session, endpoint, config.token)
        try:
            logger.debug("Response status: %s", response.status)
            try:
                payload = await response.json(content_type=None)
            except (aiohttp.ClientError, ValueError) as exc:
                logger.error("Failed to parse pool urls: %s", exc)
                raise ValueError(f"Failed to parse pool urls: {exc}") from exc
        finally:
            response.release()

    resolved = (parse_address(f"{host}:{port}") for host, port in _pool_entries(payload))
    addresses = [address for address in resolved if address is not None]
    logger.info("Found %d pool addresses", len(addresses))
    logger.info("Pool addresses: %s", addresses)
    return addresses
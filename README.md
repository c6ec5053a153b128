# dmndproxy

`dmndproxy` is an asyncio library of building blocks for a mining proxy. It
loads the proxy's settings and fetches the pool's addresses. It keeps
statistics for each miner connection and serves them, with the health of the
process, over a small HTTP API.

## Modules

- **`dmndproxy.config`**: settings come from command-line arguments, a TOML
  file and environment variables. The TOML file is `config.toml` by default and
  can be changed with `-c`/`--config`. Arguments win over the file, and the
  file wins over the environment. Hashrates take a unit suffix: `T`, `P` or `E`.
  `fetch_pool_urls(config)` asks the pool service for its addresses and
  resolves them. In local mode it returns `127.0.0.1:20000` instead.
- **`dmndproxy.stats`**: a `StatsSender` starts a background `StatsManager`
  task. The manager keeps a `DownstreamConnectionStats` record for each
  connection id: device name, hashrate, accepted and rejected share counts, and
  current difficulty. Updates are queued and applied in order. An update for
  an unknown connection id is ignored. When the queue is full, the update is
  dropped with a warning.
- **`dmndproxy.system`**: `get_cpu_and_memory_usage()` returns two values for
  the current process: its CPU percentage divided by the number of CPUs, and
  its resident memory in bytes.
- **`dmndproxy.api`**: an aiohttp application with these routes:
  - `/api/health`
  - `/api/pool/info`
  - `/api/stats/miners`
  - `/api/stats/aggregate`
  - `/api/stats/system`

  Every reply is a JSON envelope `{"success", "message", "data"}`, built by
  `ApiResponse`.

## Parsing hashrates

```python
from dmndproxy.config import parse_hashrate, format_hashrate

rate = parse_hashrate("2.5P")        # 2.5e15 h/s
print(format_hashrate(rate))         # "2.50P"
parse_hashrate("10X")                # raises ValueError: invalid unit
```

## Loading configuration

```python
from dmndproxy.config import Configuration

config = Configuration.load(
    ["--token", "token", "-d", "10T"],
    {"PRODUCTION_URL": "https://pool.example.com"},
)
print(config.environment())          # "production"
print(config.log_level())            # "info"
print(config.pool_endpoint())        # "https://pool.example.com/api/pool/urls"
```

Without `argv`, `Configuration.load` reads `sys.argv`. Without `environ`, it
reads `os.environ`.

The base URL of each pool service comes from the environment variables
`PRODUCTION_URL`, `STAGING_URL` and `TESTNET3_URL`. `pool_endpoint()` raises
`ValueError` when the URL for the selected environment is not set.

Flags can be switched on in three ways: from the command line, from the file,
or because their environment variable is present. The flags are `--staging`,
`--testnet3`, `--local`, `-m`/`--monitor` and `-u`/`--auto-update`. Auto-update
is on unless the config file sets `auto_update = false`.

## Serving statistics

```python
import asyncio
from dmndproxy.stats import StatsSender
from dmndproxy.api import start

async def main():
    stats = StatsSender()
    stats.setup_stats(1)
    stats.update_hashrate(1, 1.0e12)
    stats.update_accepted_shares(1)
    await start(stats, 3001)

asyncio.run(main())
```

`create_app(stats_sender)` returns the aiohttp application without starting a
server, which is useful for tests and for embedding. Two providers in the
application can be replaced:

- `app[POOL_STATUS_KEY]` is a callable that returns `(address, latency)`, where
  latency is a `timedelta`. By default it returns `(None, None)`, so
  `/api/pool/info` answers 404.
- `app[PROXY_STATE_KEY]` is a callable that returns `(is_down, states)`. By
  default it returns `(False, None)`, so `/api/health` answers "Proxy OK".

`aggregate_stats(stats)` sums a stats mapping into an `AggregateStats` record.

## What this package does not do

This package does not do the work of a running proxy:

- It does not listen for miner connections.
- It does not relay Stratum traffic to or from a pool.
- It does not fill in the pool status or proxy state on its own.
- It has no command-line program.

The code that uses the package must accept miners, talk to the pool, and feed
the statistics and status providers.
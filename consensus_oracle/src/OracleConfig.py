"""OracleConfig: Startup configuration of the consensus oracle.

Read once at startup from ``ORACLE_*`` environment variables and/or CLI
arguments (see main.py), then validated before the first cycle runs. An
invalid configuration raises ConfigurationError.

Environment variables:
    ORACLE_ASSETS, ORACLE_SOURCES, ORACLE_DEVIATION_THRESHOLD,
    ORACLE_RECOVERY_WINDOW, ORACLE_MIN_SOURCES, ORACLE_STALENESS_WINDOW,
    ORACLE_TWAP_WINDOWS, ORACLE_CYCLE_INTERVAL, ORACLE_FETCH_TIMEOUT,
    ORACLE_MAX_ALERTS, ORACLE_HEALTH_MAX_AGE, ORACLE_STREAM_ENABLED,
    ORACLE_SETTLEMENT_ENABLED, ORACLE_RPC_URL, ORACLE_FEED_DIRECTORY,
    ORACLE_NAV_FILE, ORACLE_DB_PATH, ORACLE_API_KEYS and
    ORACLE_<SOURCE>_API_KEY (e.g. ORACLE_COINGECKO_API_KEY).
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from .errors import ConfigurationError

ENV_PREFIX = "ORACLE_"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def parse_list(value: str | None) -> list[str]:
    """Split a comma-separated string, dropping blanks."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_api_keys(api_key_str: str | None) -> dict[str, str]:
    """Parse comma-separated API key string into a dictionary.

    Format: source1=key1,source2=key2
    Example: coingecko=demo:CG-abc123

    :param api_key_str: Comma-separated API key string.
    :returns: Dict mapping source names to API keys.
    """
    api_keys = {}
    for item in parse_list(api_key_str):
        if "=" in item:
            source, key = item.split("=", 1)
            api_keys[source.strip().lower()] = key.strip()
    return api_keys


def parse_env_api_keys(environ: Mapping[str, str]) -> dict[str, str]:
    """Collect ``ORACLE_<SOURCE>_API_KEY`` variables.

    :returns: Dict mapping source names to API keys.
    """
    api_keys = {}
    for key, value in environ.items():
        if key.startswith(ENV_PREFIX) and key.endswith("_API_KEY") and value:
            source = key[len(ENV_PREFIX):-len("_API_KEY")].lower()
            if source:
                api_keys[source] = value
    return api_keys


@dataclass
class OracleConfig:
    """Oracle configuration with defaults for every setting.

    :ivar assets: Upper-case asset symbols priced by the REST and stream sources.
    :ivar sources: REST fetcher names.
    :ivar deviation_threshold: Relative move that trips a breaker (0.10 = 10%).
    :ivar recovery_window: Seconds a trip lasts before auto-recovery.
    :ivar min_sources: Minimum contributing sources per asset.
    :ivar staleness_window: Maximum quote age in seconds.
    :ivar twap_windows: (short, medium, long) TWAP windows in seconds.
    :ivar cycle_interval: Seconds between oracle cycles.
    :ivar fetch_timeout: Per-source fetch timeout in seconds.
    :ivar max_alerts: Alert log capacity.
    :ivar health_max_age: Max age of the last cycle for a healthy pipeline.
    :ivar stream_enabled: Run the Binance trade stream.
    :ivar settlement_enabled: Submit trusted prices on-chain.
    :ivar rpc_url: JSON-RPC endpoint used for settlement.
    :ivar feed_directory: Feed directory contract address.
    :ivar nav_file: Optional JSON file with manual NAV prices.
    :ivar db_path: SQLite file for price history, or None to disable.
    :ivar api_keys: API keys per source.
    """

    assets: list[str] = field(default_factory=lambda: ["BTC", "ETH", "SOL"])
    sources: list[str] = field(
        default_factory=lambda: ["coingecko", "coinbase", "kraken"]
    )
    deviation_threshold: float = 0.10
    recovery_window: float = 60.0
    min_sources: int = 1
    staleness_window: float = 300.0
    twap_windows: tuple[float, float, float] = (300.0, 900.0, 3600.0)
    cycle_interval: float = 30.0
    fetch_timeout: float = 10.0
    max_alerts: int = 100
    health_max_age: float = 120.0
    stream_enabled: bool = False
    settlement_enabled: bool = False
    rpc_url: str | None = None
    feed_directory: str | None = None
    nav_file: str | None = None
    db_path: str | None = None
    api_keys: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.assets = [a.upper() for a in self.assets]
        self.sources = [s.lower() for s in self.sources]
        self.twap_windows = tuple(self.twap_windows)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> OracleConfig:
        """Build a configuration from ``ORACLE_*`` environment variables.

        Unset variables keep their defaults. The result is not validated.

        :param environ: Mapping to read instead of ``os.environ``.
        :raises ConfigurationError: If a variable cannot be parsed.
        """
        env = os.environ if environ is None else environ
        config = cls()

        def get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value if value else None

        try:
            if get("ASSETS"):
                config.assets = [a.upper() for a in parse_list(get("ASSETS"))]
            if get("SOURCES") is not None:
                config.sources = [s.lower() for s in parse_list(get("SOURCES"))]
            if get("DEVIATION_THRESHOLD"):
                config.deviation_threshold = float(get("DEVIATION_THRESHOLD"))
            if get("RECOVERY_WINDOW"):
                config.recovery_window = float(get("RECOVERY_WINDOW"))
            if get("MIN_SOURCES"):
                config.min_sources = int(get("MIN_SOURCES"))
            if get("STALENESS_WINDOW"):
                config.staleness_window = float(get("STALENESS_WINDOW"))
            if get("TWAP_WINDOWS"):
                config.twap_windows = tuple(float(w) for w in parse_list(get("TWAP_WINDOWS")))
            if get("CYCLE_INTERVAL"):
                config.cycle_interval = float(get("CYCLE_INTERVAL"))
            if get("FETCH_TIMEOUT"):
                config.fetch_timeout = float(get("FETCH_TIMEOUT"))
            if get("MAX_ALERTS"):
                config.max_alerts = int(get("MAX_ALERTS"))
            if get("HEALTH_MAX_AGE"):
                config.health_max_age = float(get("HEALTH_MAX_AGE"))
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment configuration: {e}") from e

        if get("STREAM_ENABLED"):
            config.stream_enabled = get("STREAM_ENABLED").lower() in _TRUE_VALUES
        if get("SETTLEMENT_ENABLED"):
            config.settlement_enabled = get("SETTLEMENT_ENABLED").lower() in _TRUE_VALUES
        config.rpc_url = get("RPC_URL")
        config.feed_directory = get("FEED_DIRECTORY")
        config.nav_file = get("NAV_FILE")
        config.db_path = get("DB_PATH")

        config.api_keys = parse_env_api_keys(env)
        config.api_keys.update(parse_api_keys(get("API_KEYS")))
        return config

    def validate(self, available_sources: list[str] | None = None) -> None:
        """Check every setting.

        :param available_sources: Known fetcher names; unknown sources are
            rejected when given.
        :raises ConfigurationError: On the first invalid setting.
        """
        if not 0 < self.deviation_threshold <= 1:
            raise ConfigurationError("deviation_threshold must be in (0, 1]")
        if self.recovery_window <= 0:
            raise ConfigurationError("recovery_window must be positive")
        if self.min_sources < 1:
            raise ConfigurationError("min_sources must be at least 1")
        if self.staleness_window <= 0:
            raise ConfigurationError("staleness_window must be positive")
        if len(self.twap_windows) != 3 or any(w <= 0 for w in self.twap_windows):
            raise ConfigurationError("twap_windows must be three positive durations")
        if not self.twap_windows[0] <= self.twap_windows[1] <= self.twap_windows[2]:
            raise ConfigurationError("twap_windows must be in ascending order")
        if self.cycle_interval <= 0:
            raise ConfigurationError("cycle_interval must be positive")
        if self.fetch_timeout <= 0:
            raise ConfigurationError("fetch_timeout must be positive")
        if self.max_alerts < 1:
            raise ConfigurationError("max_alerts must be at least 1")
        if self.health_max_age <= 0:
            raise ConfigurationError("health_max_age must be positive")
        if not self.assets:
            raise ConfigurationError("At least one asset must be specified")

        if available_sources is not None:
            unknown = [s for s in self.sources if s not in available_sources]
            if unknown:
                raise ConfigurationError(
                    f"Unknown sources: {unknown}. "
                    f"Available: {', '.join(available_sources)}"
                )

        if self.settlement_enabled and not (self.rpc_url and self.feed_directory):
            raise ConfigurationError(
                "settlement requires both rpc_url and feed_directory"
            )

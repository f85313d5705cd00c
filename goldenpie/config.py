"""
GoldenPie Configuration

Central configuration for the reward engine and the auth server.
Supports environment variables, YAML config files, and runtime overrides.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any

import yaml


SLOTS = (1, 2, 3, 4)


def default_counter_addresses() -> Dict[str, str]:
    """Per-slot counter addresses for the N64 build the engine ships against."""
    return {
        "player1_kills": "80079F0C",
        "player2_kills": "80079F7C",
        "player3_kills": "80079FEC",
        "player4_kills": "8007A05C",
        "player1_headshots": "80079F24",
        "player2_headshots": "80079F94",
        "player3_headshots": "8007A004",
        "player4_headshots": "8007A074",
        "player1_deaths": "80079F04",
        "player2_deaths": "80079F74",
        "player3_deaths": "80079FE4",
        "player4_deaths": "8007A054",
    }


@dataclass
class ChannelConfig:
    """Emulator network command channel."""
    host: str = "127.0.0.1"
    port: int = 55355
    read_timeout: float = 0.05     # Per memory read; runs many times per tick
    command_timeout: float = 2.0   # One-off commands such as VERSION
    byte_width: int = 1


@dataclass
class CounterConfig:
    """Memory addresses of the tracked counters, keyed by counter name."""
    addresses: Dict[str, str] = field(default_factory=default_counter_addresses)


@dataclass
class PollConfig:
    """Poll loop configuration."""
    interval: float = 1.0
    cooldown: float = 10.0
    jump_threshold: int = 10
    read_failure_policy: str = "last_known"  # or "zero"
    connectivity_warning_after: int = 3      # Fully failed samples in a row
    startup_delay: float = 0.0
    probe_on_start: bool = True


@dataclass
class RewardConfig:
    """Sats paid per rewarded unit."""
    kill_reward: int = 1
    headshot_reward: int = 1
    kill_memo: str = "GoldenPie Kill Reward - Spook {slot}"
    headshot_memo: str = "GoldenPie Headshot Bonus - Spook {slot}"


@dataclass
class PaymentConfig:
    """Payment provider selection and credentials."""
    provider: str = ""   # "", "zbd", "lnbits", "mock"
    zbd_api_key: str = ""
    lnbits_url: str = ""
    lnbits_api_key: str = ""
    timeout: float = 15.0


@dataclass
class AuthConfig:
    """Auth session server configuration."""
    host: str = "0.0.0.0"
    port: int = 3000
    session_ttl: float = 3600.0
    cleanup_interval: float = 300.0
    redis_url: Optional[str] = None
    public_base_url: Optional[str] = None
    app_name: str = "GoldenPie"


@dataclass
class EngineApiConfig:
    """Engine control API (UI-facing)."""
    host: str = "127.0.0.1"
    port: int = 8765


@dataclass
class GoldenPieConfig:
    """Top-level configuration."""
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    counters: CounterConfig = field(default_factory=CounterConfig)
    poll: PollConfig = field(default_factory=PollConfig)
    rewards: RewardConfig = field(default_factory=RewardConfig)
    payments: PaymentConfig = field(default_factory=PaymentConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    engine_api: EngineApiConfig = field(default_factory=EngineApiConfig)

    # Runtime
    debug: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, base: Optional["GoldenPieConfig"] = None) -> "GoldenPieConfig":
        """Apply environment variable overrides on top of ``base`` (or defaults)."""
        config = base or cls()

        # Channel
        if port := os.getenv("GOLDENPIE_CHANNEL_PORT"):
            config.channel.port = int(port)

        # Loop
        if interval := os.getenv("GOLDENPIE_POLL_INTERVAL"):
            config.poll.interval = float(interval)

        # Payments
        if provider := os.getenv("GOLDENPIE_PROVIDER"):
            config.payments.provider = provider
        if key := os.getenv("ZBD_API_KEY"):
            config.payments.zbd_api_key = key
        if url := os.getenv("LNBITS_URL"):
            config.payments.lnbits_url = url
        if key := os.getenv("LNBITS_API_KEY"):
            config.payments.lnbits_api_key = key

        # Auth
        if redis_url := os.getenv("REDIS_URL"):
            config.auth.redis_url = redis_url
        if public_url := os.getenv("GOLDENPIE_PUBLIC_URL"):
            config.auth.public_base_url = public_url

        # Debug
        if debug := os.getenv("GOLDENPIE_DEBUG"):
            config.debug = debug.lower() in ("1", "true", "yes")
        if level := os.getenv("GOLDENPIE_LOG_LEVEL"):
            config.log_level = level

        return config

    @classmethod
    def from_file(cls, path: Path) -> "GoldenPieConfig":
        """Load configuration from a YAML file. Missing file -> defaults."""
        config = cls()

        if not path.exists():
            return config

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        for section in ("channel", "poll", "rewards", "payments", "auth", "engine_api"):
            if section in data:
                target = getattr(config, section)
                for k, v in (data[section] or {}).items():
                    if not hasattr(target, k):
                        raise ValueError(f"Unknown config key: {section}.{k}")
                    setattr(target, k, v)

        if "counters" in data:
            addresses = (data["counters"] or {}).get("addresses", {})
            config.counters.addresses.update(
                {name: str(addr) for name, addr in addresses.items()}
            )

        config.debug = data.get("debug", False)
        config.log_level = data.get("log_level", "INFO")

        return config

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "GoldenPieConfig":
        """File (if given) then environment."""
        config = cls.from_file(path) if path else cls()
        return cls.from_env(config)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization. Secrets are masked."""
        payments = dict(self.payments.__dict__)
        for secret in ("zbd_api_key", "lnbits_api_key"):
            if payments[secret]:
                payments[secret] = "***"
        return {
            "channel": dict(self.channel.__dict__),
            "counters": {"addresses": dict(self.counters.addresses)},
            "poll": dict(self.poll.__dict__),
            "rewards": dict(self.rewards.__dict__),
            "payments": payments,
            "auth": dict(self.auth.__dict__),
            "engine_api": dict(self.engine_api.__dict__),
            "debug": self.debug,
            "log_level": self.log_level,
        }

    def save(self, path: Path) -> None:
        """Save configuration to a YAML file (secrets included)."""
        data = self.to_dict()
        data["payments"] = dict(self.payments.__dict__)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(data, f, sort_keys=False)


# Global config instance
_config: Optional[GoldenPieConfig] = None


def get_config() -> GoldenPieConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = GoldenPieConfig.from_env()
    return _config


def set_config(config: GoldenPieConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config

"""Run configuration."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any

from ..errors import ConfigurationError
from ..models.truth import PROFILE_EXCLUSION_FILES

DEFAULT_TARGET_HOST = "192.168.0.20"
DEFAULT_PORT = 8600


@dataclass
class CertifyOptions:
    """Transport, pacing and gating settings for one run.

    Times are in milliseconds, ``rate`` in commands per second.
    """

    target_host: str = DEFAULT_TARGET_HOST
    target_port: int = DEFAULT_PORT
    local_port: int = DEFAULT_PORT
    timeout_ms: float = 1200
    rate: float = 1.0
    settle_set_ms: float = 400
    settle_mode_ms: float = 1200
    profile: str = "exview-aio"
    include_power: bool = False
    prompt_each: bool = False
    debug_hex: bool = False
    closed_loop: bool = False

    @property
    def rate_interval_ms(self) -> int:
        return max(1, math.floor(1000 / self.rate + 0.5))

    def validate(self) -> CertifyOptions:
        """Raise :class:`ConfigurationError` for out-of-range settings."""
        if not self.target_host:
            raise ConfigurationError("Target host is required")
        if not 1 <= self.target_port <= 65535:
            raise ConfigurationError(f"Invalid target port: {self.target_port}")
        # 0 binds an ephemeral port
        if not 0 <= self.local_port <= 65535:
            raise ConfigurationError(f"Invalid local port: {self.local_port}")
        if self.timeout_ms <= 0:
            raise ConfigurationError(f"Invalid timeout: {self.timeout_ms}")
        if self.rate <= 0:
            raise ConfigurationError(f"Invalid rate: {self.rate}")
        if self.settle_set_ms < 0:
            raise ConfigurationError(f"Invalid set settle delay: {self.settle_set_ms}")
        if self.settle_mode_ms < 0:
            raise ConfigurationError(f"Invalid mode settle delay: {self.settle_mode_ms}")
        if self.profile not in PROFILE_EXCLUSION_FILES:
            raise ConfigurationError(
                f"Invalid profile: {self.profile} (supported: {', '.join(PROFILE_EXCLUSION_FILES)})"
            )
        return self

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def parse_target(value: str) -> tuple[str, int]:
    """Split ``host:port``."""
    host, _, port_text = value.rpartition(":")
    if not host or not port_text:
        raise ConfigurationError(f"Invalid target value: {value}")
    try:
        port = int(port_text)
    except ValueError:
        raise ConfigurationError(f"Invalid target port: {port_text}") from None
    if not 1 <= port <= 65535:
        raise ConfigurationError(f"Invalid target port: {port_text}")
    return host, port

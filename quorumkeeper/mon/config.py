"""
Monitor Quorum Configuration

Desired-state specification for the monitor group using Pydantic for
validation, plus operator-wide settings read from the environment and
the precedence rules used to resolve health-check timing.
"""

from __future__ import annotations

import os
import re
from datetime import timedelta
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from quorumkeeper.mon.errors import ConfigurationError
from quorumkeeper.mon.types import (
    DEFAULT_MON_PORT,
    DEFAULT_RESOURCE_PREFIX,
    NetworkProvider,
)

DEFAULT_HEALTH_CHECK_INTERVAL = timedelta(seconds=45)
DEFAULT_MON_OUT_TIMEOUT = timedelta(minutes=10)

ENV_PREFIX = "QUORUMKEEPER_"

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> timedelta:
    """
    Parse a duration string such as ``"45s"``, ``"10m"`` or ``"1h30m"``.

    A bare ``"0"`` is accepted. Anything else without a unit is rejected.
    """
    text = value.strip()
    if not text:
        raise ConfigurationError("empty duration")
    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return timedelta(0)

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ConfigurationError(f"invalid duration {value!r}")
    return timedelta(seconds=sign * total)


def _validate_duration(v: Optional[str]) -> Optional[str]:
    if v is not None and v != "":
        parse_duration(v)
    return v or None


# =============================================================================
# Cluster spec
# =============================================================================


class ZoneSpec(BaseModel):
    """A named failure zone of a stretch cluster."""
    name: str = Field(min_length=1)
    arbiter: bool = False


class StretchClusterSpec(BaseModel):
    """Zones of a stretch cluster; exactly one of them is the arbiter."""
    zones: List[ZoneSpec] = Field(default_factory=list)

    @field_validator("zones")
    @classmethod
    def validate_arbiter(cls, v: List[ZoneSpec]) -> List[ZoneSpec]:
        arbiters = [z for z in v if z.arbiter]
        if len(arbiters) != 1:
            raise ValueError("stretch cluster requires exactly one arbiter zone")
        names = [z.name for z in v]
        if len(set(names)) != len(names):
            raise ValueError("stretch cluster zone names must be unique")
        return v

    @property
    def arbiter_zone(self) -> str:
        return next(z.name for z in self.zones if z.arbiter)

    @property
    def data_zones(self) -> List[str]:
        return [z.name for z in self.zones if not z.arbiter]


class MonSpec(BaseModel):
    """Desired monitor membership."""
    # Not constrained here: a non-positive count is a precondition failure
    # of the reconciliation pass, not a parse error.
    count: int = 3
    allow_multiple_per_node: bool = False
    stretch_cluster: Optional[StretchClusterSpec] = None
    external_mon_ids: List[str] = Field(default_factory=list)
    port: int = Field(default=DEFAULT_MON_PORT, ge=1, le=65535)

    @property
    def is_stretch(self) -> bool:
        return self.stretch_cluster is not None


class NetworkSpec(BaseModel):
    """Network mode for monitor workloads."""
    provider: NetworkProvider = NetworkProvider.DEFAULT

    @property
    def is_host(self) -> bool:
        return self.provider == NetworkProvider.HOST


class MonHealthSpec(BaseModel):
    """Per-cluster health-check overrides for monitors."""
    disabled: bool = False
    interval: Optional[str] = Field(default=None, description="e.g. '45s'")
    timeout: Optional[str] = Field(default=None, description="e.g. '10m'")

    @field_validator("interval", "timeout")
    @classmethod
    def validate_duration(cls, v: Optional[str]) -> Optional[str]:
        return _validate_duration(v)


class HealthCheckSpec(BaseModel):
    mon: MonHealthSpec = Field(default_factory=MonHealthSpec)


class ClusterSpec(BaseModel):
    """
    Desired state of one storage cluster's monitor group.

    All sub-specs are accessible via dot notation.
    """
    name: str = Field(default="storage-cluster", min_length=1)
    namespace: str = Field(default="default", min_length=1)
    resource_prefix: str = Field(default=DEFAULT_RESOURCE_PREFIX, min_length=1)
    external_cluster: bool = Field(
        default=False,
        description="Monitors are run elsewhere; only mirror them",
    )

    mon: MonSpec = Field(default_factory=MonSpec)
    network: NetworkSpec = Field(default_factory=NetworkSpec)
    health_check: HealthCheckSpec = Field(default_factory=HealthCheckSpec)


# =============================================================================
# Operator-wide settings
# =============================================================================


class OperatorSettings(BaseModel):
    """Settings shared by every cluster the operator manages."""
    mon_healthcheck_interval: Optional[str] = None
    mon_out_timeout: Optional[str] = None

    @field_validator("mon_healthcheck_interval", "mon_out_timeout")
    @classmethod
    def validate_duration(cls, v: Optional[str]) -> Optional[str]:
        return _validate_duration(v)

    @classmethod
    def from_env(cls) -> "OperatorSettings":
        """Create settings from environment variables."""
        return cls(
            mon_healthcheck_interval=os.environ.get(
                f"{ENV_PREFIX}MON_HEALTHCHECK_INTERVAL"
            ),
            mon_out_timeout=os.environ.get(f"{ENV_PREFIX}MON_OUT_TIMEOUT"),
        )


def _resolve(
    cluster_value: Optional[str],
    operator_value: Optional[str],
    default: timedelta,
) -> timedelta:
    # Per-cluster override strictly dominates the operator-wide one.
    if cluster_value:
        return parse_duration(cluster_value)
    if operator_value:
        return parse_duration(operator_value)
    return default


def resolve_health_check_interval(
    spec: ClusterSpec,
    settings: Optional[OperatorSettings] = None,
) -> timedelta:
    settings = settings or OperatorSettings()
    return _resolve(
        spec.health_check.mon.interval,
        settings.mon_healthcheck_interval,
        DEFAULT_HEALTH_CHECK_INTERVAL,
    )


def resolve_mon_out_timeout(
    spec: ClusterSpec,
    settings: Optional[OperatorSettings] = None,
) -> timedelta:
    settings = settings or OperatorSettings()
    return _resolve(
        spec.health_check.mon.timeout,
        settings.mon_out_timeout,
        DEFAULT_MON_OUT_TIMEOUT,
    )

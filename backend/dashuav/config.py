"""Runtime settings for the DashUAV event core."""

import logging
import os
from typing import Any, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_MAX_EVENTS = 5000
DEFAULT_MAX_TELEMETRY = 2000
DEFAULT_MAX_DETECTIONS = 2000
DEFAULT_EVENT_LIMIT = 200

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_number(value: Any, fallback: int) -> int:
    """Parse an integer setting, returning ``fallback`` when it is unusable."""
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return fallback


def parse_float(value: Any, fallback: float) -> float:
    if value is None or isinstance(value, bool):
        return fallback
    try:
        return float(str(value).strip())
    except ValueError:
        return fallback


def parse_origins(value: Union[str, List[str], None]) -> List[str]:
    """Split a comma separated origin list (or clean an existing list)."""
    if isinstance(value, (list, tuple)):
        return [str(origin).strip() for origin in value if str(origin).strip()]
    return [origin.strip() for origin in str(value or "*").split(",") if origin.strip()]


class Settings(BaseModel):
    """Capacities, window sizes and service options.

    Built once at process start and handed to every component that needs it.
    """

    port: int = 8080
    max_events: int = DEFAULT_MAX_EVENTS
    max_telemetry: int = DEFAULT_MAX_TELEMETRY
    max_detections: int = DEFAULT_MAX_DETECTIONS
    default_event_limit: int = DEFAULT_EVENT_LIMIT
    snapshot_limit: Optional[int] = None
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    cluster_threshold_m: float = 150.0
    telemetry_bucket_ms: int = 250
    subscriber_queue_size: int = 1000
    auto_sim_enabled: bool = False
    auto_sim_interval_min: float = 1.5
    auto_sim_interval_max: float = 3.0
    log_level: str = "INFO"

    @field_validator(
        "max_events",
        "max_telemetry",
        "max_detections",
        "default_event_limit",
        "telemetry_bucket_ms",
        "subscriber_queue_size",
        mode="before",
    )
    @classmethod
    def _positive_int(cls, value: Any, info) -> int:
        default = cls.model_fields[info.field_name].default
        parsed = parse_number(value, default)
        return parsed if parsed > 0 else default

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _origins(cls, value: Any) -> List[str]:
        return parse_origins(value)

    @model_validator(mode="after")
    def _fill_snapshot_limit(self) -> "Settings":
        if self.snapshot_limit is None or self.snapshot_limit <= 0:
            self.snapshot_limit = self.default_event_limit
        if self.cluster_threshold_m <= 0:
            self.cluster_threshold_m = 150.0
        if self.auto_sim_interval_max < self.auto_sim_interval_min:
            self.auto_sim_interval_max = self.auto_sim_interval_min
        return self

    @property
    def allow_all_origins(self) -> bool:
        return "*" in self.cors_origins

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "Settings":
        """Build settings from environment variables; keyword overrides win."""
        env = os.environ if environ is None else environ
        values = {
            "port": parse_number(env.get("PORT"), 8080),
            "max_events": env.get("MAX_EVENTS"),
            "max_telemetry": env.get("MAX_TELEMETRY"),
            "max_detections": env.get("MAX_DETECTIONS"),
            "default_event_limit": env.get("DEFAULT_EVENT_LIMIT"),
            "snapshot_limit": parse_number(env.get("SNAPSHOT_LIMIT"), 0) or None,
            "cors_origins": env.get("CORS_ORIGINS", "*"),
            "cluster_threshold_m": parse_float(env.get("CLUSTER_THRESHOLD_M"), 150.0),
            "telemetry_bucket_ms": env.get("TELEMETRY_BUCKET_MS"),
            "subscriber_queue_size": env.get("SUBSCRIBER_QUEUE_SIZE"),
            "auto_sim_enabled": env.get("AUTO_SIM_ENABLED", "false").lower() == "true",
            "auto_sim_interval_min": parse_float(env.get("AUTO_SIM_INTERVAL_MIN"), 1.5),
            "auto_sim_interval_max": parse_float(env.get("AUTO_SIM_INTERVAL_MAX"), 3.0),
            "log_level": env.get("LOG_LEVEL", "INFO").upper(),
        }
        values.update(overrides)
        return cls(**values)


def configure_logging(level: str = "INFO") -> None:
    """Install a basic root handler once; later calls only adjust the level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=LOG_FORMAT)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

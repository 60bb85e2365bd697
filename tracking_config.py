"""Tunables for the trip/ETA/notification state machine.

Defaults come from the environment; a JSON file in one of the data directories
may override any known key (values are coerced to the default's type).
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

DATA_DIRS = [Path(p) for p in os.getenv("DATA_DIRS", "/data").split(":")]
DEFAULT_TRACKING_CONFIG_PATH = Path(
    os.getenv("TRACKING_CONFIG_PATH", "config/tracking_config.json")
)

# Firestore rejects batches above 500 writes
STORE_BATCH_CEILING = 500


@dataclass(frozen=True)
class TrackingConfig:
    timezone: str = os.getenv("TRACKING_TZ", "Asia/Kolkata")
    stop_proximity_m: float = float(os.getenv("STOP_PROXIMITY_M", "200"))
    skip_probe_depth: int = int(os.getenv("SKIP_PROBE_DEPTH", "2"))
    provider_refresh_s: float = float(os.getenv("PROVIDER_REFRESH_S", "180"))
    provider_retry_s: float = float(os.getenv("PROVIDER_RETRY_S", "60"))
    provider_timeout_s: float = float(os.getenv("PROVIDER_TIMEOUT_S", "15"))
    fallback_speed_mps: float = float(os.getenv("FALLBACK_SPEED_MPS", "8.33"))
    stale_gps_s: float = float(os.getenv("STALE_GPS_S", str(10 * 60)))
    rider_stop_match_m: float = float(os.getenv("RIDER_STOP_MATCH_M", "50"))
    no_pending_grace_s: float = float(os.getenv("NO_PENDING_GRACE_S", "120"))
    batch_limit: int = int(os.getenv("BATCH_LIMIT", "450"))
    tick_interval_s: float = float(os.getenv("TICK_INTERVAL_S", "60"))
    schedule_cache_ttl_s: float = float(os.getenv("SCHEDULE_CACHE_TTL_S", "3600"))

    def __post_init__(self) -> None:
        if self.batch_limit < 1 or self.batch_limit > STORE_BATCH_CEILING:
            raise ValueError(
                f"batch_limit must be between 1 and {STORE_BATCH_CEILING}, got {self.batch_limit}"
            )
        if self.stop_proximity_m <= 0:
            raise ValueError("stop_proximity_m must be positive")
        if self.fallback_speed_mps <= 0:
            raise ValueError("fallback_speed_mps must be positive")


CONFIG_KEYS = {f.name for f in fields(TrackingConfig)}


def _coerce_overrides(base: TrackingConfig, raw: Dict[str, Any]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for key, value in raw.items():
        if key not in CONFIG_KEYS:
            print(f"[config] ignoring unknown key {key!r}")
            continue
        cur = getattr(base, key)
        try:
            overrides[key] = type(cur)(value)
        except (TypeError, ValueError):
            print(f"[config] bad value for {key}: {value!r}")
    return overrides


def load_tracking_config(
    path: Path = DEFAULT_TRACKING_CONFIG_PATH,
    *,
    data_dirs: Optional[Sequence[Path]] = None,
) -> TrackingConfig:
    """Build the config from env defaults plus the first readable JSON override file."""
    config = TrackingConfig()
    if data_dirs is None:
        data_dirs = DATA_DIRS
    candidates: List[Path]
    if path.is_absolute():
        candidates = [path]
    else:
        candidates = [base / path for base in data_dirs]
        candidates.append(path)
    for candidate in candidates:
        if not candidate.exists():
            continue
        try:
            raw = json.loads(candidate.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            print(f"[config] failed to load {candidate}: {exc}")
            continue
        if isinstance(raw, dict):
            source = raw.get("config") if isinstance(raw.get("config"), dict) else raw
            config = replace(config, **_coerce_overrides(config, source))
            print(f"[config] loaded overrides from {candidate}")
        break
    return config


__all__ = ["TrackingConfig", "load_tracking_config", "CONFIG_KEYS", "STORE_BATCH_CEILING", "DATA_DIRS"]

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


def project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(root: Path, value: str | Path) -> Path:
    path = Path(value)
    return path if path.is_absolute() else (root / path)


class AppSection(BaseModel):
    name: str = "corridortrack"


class PathsSection(BaseModel):
    corridors_dir: Path = Path("data/corridors")
    corridors_csv: Optional[Path] = None
    trips_dir: Path = Path("data/trips")


class CorridorsSection(BaseModel):
    # Load every corridor during app startup; otherwise each key is read on first access.
    load_on_start: bool = True
    simplify_tolerance_deg: float = 0.0005


class TrackingSection(BaseModel):
    freshness_window_seconds: float = 300.0
    reaper_interval_seconds: float = 60.0
    ended_retention_seconds: float = 600.0
    backtrack_policy: Literal["accept", "hold", "threshold"] = "accept"
    max_backtrack_meters: float = 150.0
    backtrack_confirm_fixes: int = Field(default=3, ge=1)
    persistence: Literal["memory", "json"] = "memory"


class EtaSection(BaseModel):
    default_speed_kmph: float = 45.0
    min_confident_speed_kmph: float = 5.0


class RealtimeSection(BaseModel):
    subscriber_buffer: int = 100
    sse_keepalive_seconds: float = 15.0


class ClientSection(BaseModel):
    base_url: str = "http://localhost:8000"
    request_timeout_seconds: float = 10.0
    poll_base_seconds: float = 2.0
    poll_max_seconds: float = 30.0
    push_base_seconds: float = 1.0
    push_max_seconds: float = 60.0
    backoff_multiplier: float = 2.0
    respect_retry_after: bool = True


class AuthSection(BaseModel):
    # token -> vehicle ref; when empty the X-Vehicle-Ref header is trusted.
    vehicle_tokens: dict[str, str] = Field(default_factory=dict)


class CorsSection(BaseModel):
    allow_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:8000", "http://localhost:5173"]
    )


class RateLimitSection(BaseModel):
    enabled: bool = True
    window_seconds: float = 10.0
    max_requests: int = 20
    include_paths: list[str] = Field(default_factory=lambda: ["/corridor/"])


class ApiSection(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    cors: CorsSection = Field(default_factory=CorsSection)
    rate_limit: RateLimitSection = Field(default_factory=RateLimitSection)


class AppConfig(BaseModel):
    app: AppSection = Field(default_factory=AppSection)
    paths: PathsSection = Field(default_factory=PathsSection)
    corridors: CorridorsSection = Field(default_factory=CorridorsSection)
    tracking: TrackingSection = Field(default_factory=TrackingSection)
    eta: EtaSection = Field(default_factory=EtaSection)
    realtime: RealtimeSection = Field(default_factory=RealtimeSection)
    client: ClientSection = Field(default_factory=ClientSection)
    auth: AuthSection = Field(default_factory=AuthSection)
    api: ApiSection = Field(default_factory=ApiSection)

    def resolve_paths(self, root: Optional[Path] = None) -> "AppConfig":
        repo_root = project_root() if root is None else root
        corridors_csv = self.paths.corridors_csv
        updated_paths = self.paths.model_copy(
            update={
                "corridors_dir": _resolve_path(repo_root, self.paths.corridors_dir),
                "corridors_csv": _resolve_path(repo_root, corridors_csv) if corridors_csv else None,
                "trips_dir": _resolve_path(repo_root, self.paths.trips_dir),
            }
        )
        return self.model_copy(update={"paths": updated_paths})


def load_config(config_path: str | Path | None = None) -> AppConfig:
    load_dotenv()

    root = project_root()
    candidate = config_path or os.getenv("CORRIDORTRACK_CONFIG", "configs/config.yaml")
    path = _resolve_path(root, candidate)
    if not path.exists():
        path = root / "configs/config.example.yaml"

    data: dict[str, Any] = {}
    if path.exists():
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return AppConfig.model_validate(data).resolve_paths(root)


_CONFIG: AppConfig | None = None


def get_config() -> AppConfig:
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = load_config()
    return _CONFIG

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "JUNKYARD_"


@dataclass
class Settings:
    # Upstream endpoints
    pyp_base_url: str = "https://www.pyp.com"
    pyp_location_page: str = "/inventory/"
    pyp_inventory_endpoint: str = (
        "/DesktopModules/pyp_vehicleInventory/getVehicleInventory.aspx"
    )
    row52_base_url: str = "https://api.row52.com"
    row52_cdn_url: str = "https://cdn.row52.com"

    # Outbound request behaviour
    max_concurrent_requests: int = 5
    request_timeout_seconds: float = 15.0
    request_delay_seconds: float = 0.5
    max_retries: int = 3
    base_retry_delay_seconds: float = 1.0
    max_retry_delay_seconds: float = 10.0
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )

    # Caching
    vehicle_cache_ttl_seconds: float = 300
    location_cache_ttl_seconds: float = 3600

    # Aggregation
    source_priority: list[str] = field(default_factory=lambda: ["pyp", "row52"])
    default_origin: tuple[float, float] = (39.8283, -98.5795)

    # Alerts
    database_url: str = "sqlite:///junkyard_index.db"
    app_url: str = "http://localhost:3000"
    alert_batch_size: int = 5
    lock_timeout_minutes: float = 5
    polar_api_url: str = "https://api.polar.sh"
    polar_access_token: str = ""
    discord_bot_token: str = ""
    unsubscribe_secret: str = ""
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from: str = "alerts@junkyardindex.com"


def _coerce(raw: str, current):
    """Convert an environment string to the type of the current default."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, (list, tuple)):
        parts = [p.strip() for p in raw.split(",") if p.strip()]
        if isinstance(current, tuple):
            return tuple(float(p) for p in parts)
        return parts
    return raw


def apply_env(settings: Settings, environ: dict | None = None) -> Settings:
    """Override settings from JUNKYARD_* environment variables."""
    environ = os.environ if environ is None else environ
    for f in fields(Settings):
        key = ENV_PREFIX + f.name.upper()
        if key in environ:
            setattr(settings, f.name, _coerce(environ[key], getattr(settings, f.name)))
    return settings


def load_settings(path: str = "config/settings.json") -> Settings:
    """Load application settings from a JSON file plus the environment."""
    load_dotenv()
    filepath = Path(path)
    if not filepath.exists():
        return apply_env(Settings())

    with open(filepath) as f:
        data = json.load(f)

    if "default_origin" in data:
        data["default_origin"] = tuple(data["default_origin"])
    known = {f.name for f in fields(Settings)}
    settings = Settings(**{k: v for k, v in data.items() if k in known})
    return apply_env(settings)

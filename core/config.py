import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator

from utils.timezone_helpers import get_default_timezone, validate_timezone

# Settings are read once at process start and handed to the app via app.state

load_dotenv()


# Office location defaults (Phnom Penh office)
DEFAULT_OFFICE_LATITUDE = 11.55187745723682
DEFAULT_OFFICE_LONGITUDE = 104.92836774000962
DEFAULT_OFFICE_RADIUS = 10.0
DEFAULT_OFFICE_BUFFER_RADIUS = 5.0


class GeofenceConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    center_lat: float = DEFAULT_OFFICE_LATITUDE
    center_lng: float = DEFAULT_OFFICE_LONGITUDE
    radius_meters: float = DEFAULT_OFFICE_RADIUS
    buffer_meters: float = DEFAULT_OFFICE_BUFFER_RADIUS
    address: str = "Office Address Not Set"

    @field_validator("radius_meters")
    @classmethod
    def radius_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("OFFICE_RADIUS must be greater than zero")
        return value

    @field_validator("buffer_meters")
    @classmethod
    def buffer_not_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("OFFICE_BUFFER_RADIUS cannot be negative")
        return value


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    geofence: GeofenceConfig = GeofenceConfig()
    timezone: str = "UTC"
    observer_roles: tuple[str, ...] = ("owner", "admin")

    # Seconds a single store round trip may take before the caller sees a 503
    store_timeout_seconds: float = 5.0

    presence_heartbeat_seconds: float = 25.0
    presence_idle_timeout_seconds: float = 60.0
    presence_queue_size: int = 100

    database_url: Optional[str] = None
    allowed_origins: tuple[str, ...] = ()
    log_level: str = "INFO"

    @field_validator("timezone")
    @classmethod
    def timezone_known(cls, value: str) -> str:
        if not validate_timezone(value):
            raise ValueError(f"Unknown timezone: {value}")
        return value

    @classmethod
    def from_env(cls) -> "Settings":
        geofence = GeofenceConfig(
            center_lat=float(os.getenv("OFFICE_LATITUDE", DEFAULT_OFFICE_LATITUDE)),
            center_lng=float(os.getenv("OFFICE_LONGITUDE", DEFAULT_OFFICE_LONGITUDE)),
            radius_meters=float(os.getenv("OFFICE_RADIUS", DEFAULT_OFFICE_RADIUS)),
            buffer_meters=float(
                os.getenv("OFFICE_BUFFER_RADIUS", DEFAULT_OFFICE_BUFFER_RADIUS)
            ),
            address=os.getenv("OFFICE_ADDRESS", "Office Address Not Set"),
        )

        raw_roles = os.getenv("OBSERVER_ROLES", "owner,admin")
        observer_roles = tuple(
            role.strip().lower() for role in raw_roles.split(",") if role.strip()
        )

        # Default values can be provided if the env var is not set
        dev_domain = os.getenv("DEV_DOMAIN", "http://localhost:5173")
        production_domain = os.getenv("PRODUCTION_DOMAIN")
        origins = [dev_domain, production_domain, "http://localhost:3000"]
        allowed_origins = tuple(sorted({origin for origin in origins if origin}))

        return cls(
            geofence=geofence,
            timezone=os.getenv("OFFICE_TIMEZONE", "UTC") or get_default_timezone(),
            observer_roles=observer_roles,
            store_timeout_seconds=float(os.getenv("STORE_TIMEOUT_SECONDS", "5")),
            presence_heartbeat_seconds=float(
                os.getenv("PRESENCE_HEARTBEAT_SECONDS", "25")
            ),
            presence_idle_timeout_seconds=float(
                os.getenv("PRESENCE_IDLE_TIMEOUT_SECONDS", "60")
            ),
            presence_queue_size=int(os.getenv("PRESENCE_QUEUE_SIZE", "100")),
            database_url=os.getenv("DATABASE_URL"),
            allowed_origins=allowed_origins,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

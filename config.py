import os


def _parse_map(raw: str, default: dict, cast=float) -> dict:
    """Parse "key=value,key=value" into a dict; bad parts are skipped."""
    out = {}
    for part in (raw or "").split(","):
        part = part.strip()
        if not part or "=" not in part:
            continue
        k, v = part.split("=", 1)
        try:
            out[k.strip().lower()] = cast(v.strip())
        except ValueError:
            continue
    return out or dict(default)


def _parse_list(raw: str) -> list:
    return [p.strip().lower() for p in (raw or "").split(",") if p.strip()]


_DB_FILE = os.path.join(os.path.dirname(__file__), "dispatch.db")


class Settings:
    DATABASE_URL: str = os.environ.get("DATABASE_URL", f"sqlite:///{_DB_FILE}")
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")
    DEBUG: bool = os.environ.get("DEBUG", "false").lower() in ("1", "true", "yes")

    # Discovery
    SEARCH_RADIUS_KM: dict = _parse_map(
        os.environ.get("SEARCH_RADIUS_KM", ""), {"normal": 10.0, "high": 15.0, "urgent": 25.0}
    )
    RETRY_BACKOFF_SECS: dict = _parse_map(
        os.environ.get("RETRY_BACKOFF_SECS", ""), {"normal": 60, "high": 30, "urgent": 15}, cast=int
    )
    PRIORITY_MULTIPLIERS: dict = _parse_map(
        os.environ.get("PRIORITY_MULTIPLIERS", ""), {"normal": 1.0, "high": 1.2, "urgent": 1.3}
    )
    DRIVER_PING_MAX_AGE_SECS: int = int(os.environ.get("DRIVER_PING_MAX_AGE_SECS", "120"))
    MAX_CANDIDATES: int = int(os.environ.get("MAX_CANDIDATES", "20"))
    CREDIT_GATED_SERVICES: list = _parse_list(os.environ.get("CREDIT_GATED_SERVICES", "taxi,delivery"))
    ETA_MINUTES_PER_KM: float = float(os.environ.get("ETA_MINUTES_PER_KM", "2.5"))
    DRIVER_NOTIFICATION_TTL_SECS: int = int(os.environ.get("DRIVER_NOTIFICATION_TTL_SECS", "120"))

    # Bidding
    BIDDING_WINDOW_SECS: int = int(os.environ.get("BIDDING_WINDOW_SECS", "300"))
    BID_MIN_FACTOR: float = float(os.environ.get("BID_MIN_FACTOR", "0.5"))
    BID_MAX_FACTOR: float = float(os.environ.get("BID_MAX_FACTOR", "1.5"))
    BID_RAISE_INCREMENT: int = int(os.environ.get("BID_RAISE_INCREMENT", "500"))

    # Arrival & credits
    ARRIVAL_MIN_WAIT_SECS: int = int(os.environ.get("ARRIVAL_MIN_WAIT_SECS", "120"))
    ARRIVAL_MAX_DISTANCE_M: float = float(os.environ.get("ARRIVAL_MAX_DISTANCE_M", "100"))
    LOW_CREDIT_THRESHOLD: int = int(os.environ.get("LOW_CREDIT_THRESHOLD", "5"))

    # Settlement
    PLATFORM_FEE_BPS: int = int(os.environ.get("PLATFORM_FEE_BPS", "500"))
    ESCROW_AUTO_RELEASE_DAYS: int = int(os.environ.get("ESCROW_AUTO_RELEASE_DAYS", "7"))
    CURRENCY: str = os.environ.get("CURRENCY", "CDF")

    # Fare estimate
    BASE_FARE: int = int(os.environ.get("BASE_FARE", "2000"))
    PER_KM_FARE: int = int(os.environ.get("PER_KM_FARE", "300"))
    VEHICLE_CLASS_MULTIPLIERS: dict = _parse_map(
        os.environ.get("VEHICLE_CLASS_MULTIPLIERS", ""),
        {"standard": 1.0, "moto": 0.6, "comfort": 1.3, "van": 1.4, "truck": 2.0},
    )

    def radius_for(self, priority: str) -> float:
        return self.SEARCH_RADIUS_KM.get(priority, self.SEARCH_RADIUS_KM.get("normal", 10.0))

    def backoff_for(self, priority: str) -> int:
        return self.RETRY_BACKOFF_SECS.get(priority, self.RETRY_BACKOFF_SECS.get("normal", 60))

    def multiplier_for(self, priority: str) -> float:
        return self.PRIORITY_MULTIPLIERS.get(priority, 1.0)


settings = Settings()

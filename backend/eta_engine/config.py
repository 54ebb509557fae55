from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    directory_base_url: str = "http://localhost:8080"
    redis_url: str = "redis://localhost:6379/0"
    route_refresh_hours: int = 1
    preload_routes: list[str] = []
    log_level: str = "INFO"

    # Telemetry
    max_plausible_speed_kmh: float = 150.0
    fix_window_size: int = 8

    # Bus state
    speed_smoothing_alpha: float = 0.3
    idle_speed_kmh: float = 3.0
    jump_allowed_after_seconds: float = 180.0

    # Route projection
    skip_ahead_ratio: float = 2.0

    # ETA estimation
    min_effective_speed_kmh: float = 5.0
    arrival_radius_km: float = 0.15
    gps_fresh_window_seconds: float = 120.0
    hybrid_after_seconds: float = 30.0
    historical_after_seconds: float = 120.0
    speed_volatility_cv: float = 0.5
    default_schedule_speed_kmh: float = 20.0
    dwell_minutes_per_stop: float = 1.0
    eta_cache_ttl_seconds: float = 5.0

    # Learned segment speeds
    service_utc_offset_hours: float = 0.0
    min_segment_samples: int = 1

    # Nearby-bus lookup
    nearby_radius_km: float = 5.0
    nearby_max_age_seconds: float = 300.0

    # Staleness
    staleness_interval_seconds: int = 15
    idle_after_seconds: float = 90.0
    offline_after_seconds: float = 180.0
    offline_retention_seconds: float = 1800.0

    # Broadcasting
    debounce_seconds: float = 1.0
    eta_change_threshold_seconds: float = 30.0
    subscriber_queue_size: int = 100

    model_config = {"env_prefix": "", "case_sensitive": False}


settings = Settings()

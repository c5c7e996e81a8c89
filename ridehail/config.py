"""Centralised application settings loaded from environment / .env file."""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Region (San Francisco, Union Square)
    region_center_lat: float = 37.7879
    region_center_lng: float = -122.4074

    # Driver pool
    driver_pool_size: int = 20

    # Dispatcher
    search_delay_min_seconds: float = 2.0  # simulated matching latency
    search_delay_max_seconds: float = 4.0
    offer_timeout_seconds: float = 5.0  # real driver must accept within this
    boarding_pause_seconds: float = 2.0
    approach_duration_min_seconds: float = 120.0
    approach_duration_max_seconds: float = 180.0
    trip_duration_seconds: float = 300.0

    # Movement simulation
    tick_interval_seconds: float = 0.5
    arrival_threshold_m: float = 5.0
    approach_radius_m: float = 100.0
    average_speed_kmh: float = 40.0

    # Simulated offers for logged-in drivers
    first_offer_delay_seconds: float = 2.0
    offer_interval_seconds: float = 15.0
    offer_expiry_seconds: float = 30.0

    # Pricing
    base_fare: float = 2.0  # USD
    rate_per_km: float = 1.5  # USD / km

    # Rider / driver clients
    api_base_url: str = "http://localhost:8000/api/v1"
    request_timeout_seconds: float = 30.0
    retry_max_attempts: int = Field(3, ge=1)
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 8.0
    search_poll_interval_seconds: float = 1.0
    ride_poll_interval_seconds: float = 2.0
    max_search_polls: int = 30
    offer_poll_interval_seconds: float = 3.0
    stats_refresh_interval_seconds: float = 10.0
    geocoding_debounce_seconds: float = 1.0
    min_movement_m: float = 10.0

    # API
    rate_limit: str = "600/minute"

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./delaywatch.db"

    ups_client_id: Optional[str] = None
    ups_client_secret: Optional[str] = None
    ups_api_url: str = "https://onlinetools.ups.com"

    fedex_client_id: Optional[str] = None
    fedex_client_secret: Optional[str] = None
    fedex_api_url: str = "https://apis.fedex.com"

    usps_user_id: Optional[str] = None
    usps_api_url: str = "https://secure.shippingapis.com"

    carrier_request_timeout: float = 30.0

    poll_scheduler_interval_minutes: int = 15
    poll_scheduler_batch_size: int = 500
    poll_scheduler_max_jobs: int = 10000

    carrier_poll_concurrency: int = 10
    carrier_poll_attempts: int = 3
    carrier_poll_backoff_seconds: float = 2.0

    log_level: str = "INFO"
    log_file: Optional[str] = None

    class Config:
        env_file = ".env"


settings = Settings()

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MBMASTER_", env_file=".env", extra="ignore")

    # Device defaults
    default_port: int = Field(default=502, ge=1, le=65535)
    # 255 is what direct TCP devices conventionally ignore; gateways need the real unit
    default_unit_id: int = Field(default=255, ge=0, le=255)

    # Timeouts (seconds)
    request_timeout: float = Field(default=3.0, gt=0)
    connect_timeout: float = Field(default=3.0, gt=0)

    # Transport layout: False = one connection per device,
    # True = devices at the same host:port share one connection
    shared_transport: bool = False

    # Largest single read from the socket; one full MBAP frame is 260 bytes
    read_chunk_size: int = Field(default=260, ge=1, le=65536)

    # Observability
    log_level: str = "INFO"
    log_json: bool = True
    enable_metrics: bool = True


settings = Settings()

"""
Service Configuration
=====================

Settings are read from environment variables once per process start and
passed explicitly to the components that need them.
"""

import os
from typing import Literal, Optional

from pydantic import BaseModel, Field


class Settings(BaseModel):
    """Deployment settings for the fleet coordination service"""

    mongo_uri: str = "mongodb://localhost:27017/?replicaSet=rs-fleet"
    mongo_db_name: str = "scooter_fleet"
    storage_backend: Literal["mongo", "memory"] = "mongo"

    device_channel: Literal["http", "simulated"] = "http"
    device_gateway_url: str = "http://localhost:9000"
    device_gateway_token: Optional[str] = None

    # Ack timeout is per attempt and separate from the retry backoff
    command_timeout_seconds: float = Field(7.0, gt=0)
    command_max_attempts: int = Field(3, ge=1)
    command_backoff_seconds: float = Field(0.5, ge=0)

    simulated_failure_rate: float = Field(0.0, ge=0, le=1)
    simulated_drop_rate: float = Field(0.0, ge=0, le=1)
    simulated_latency_seconds: float = Field(0.05, ge=0)

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults"""
        env = {
            "mongo_uri": os.getenv("MONGO_URI"),
            "mongo_db_name": os.getenv("MONGO_DB_NAME"),
            "storage_backend": os.getenv("STORAGE_BACKEND"),
            "device_channel": os.getenv("DEVICE_CHANNEL"),
            "device_gateway_url": os.getenv("DEVICE_GATEWAY_URL"),
            "device_gateway_token": os.getenv("DEVICE_GATEWAY_TOKEN"),
            "command_timeout_seconds": os.getenv("COMMAND_TIMEOUT_SECONDS"),
            "command_max_attempts": os.getenv("COMMAND_MAX_ATTEMPTS"),
            "command_backoff_seconds": os.getenv("COMMAND_BACKOFF_SECONDS"),
            "simulated_failure_rate": os.getenv("SIMULATED_FAILURE_RATE"),
            "simulated_drop_rate": os.getenv("SIMULATED_DROP_RATE"),
            "simulated_latency_seconds": os.getenv("SIMULATED_LATENCY_SECONDS"),
            "log_level": os.getenv("LOG_LEVEL"),
        }
        return cls(**{key: value for key, value in env.items() if value is not None})

"""Global room service and client settings"""

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Centralized configuration.
    Reads configs from env variables.
    """

    app_name: str = "RoomSync Backend"
    server_port: int = 8000

    db_name: str = "roomsync.db"

    redis_url: str = "redis://localhost:6379"

    # Where clients reach the REST API, defaults to the local server
    backend_url: str | None = None

    request_timeout: float = 10.0

    log_level: str = "INFO"

    model_config = {"env_file": ".env"}

    @model_validator(mode="after")
    def default_backend_url(self) -> "Settings":
        """Points clients at the local server when no backend_url is configured."""
        if not self.backend_url:
            self.backend_url = f"http://localhost:{self.server_port}"
        return self


settings = Settings()

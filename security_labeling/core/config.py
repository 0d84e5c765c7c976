"""Application configuration for the Security Labeling Service.

Configuration is loaded from environment variables, making the service suitable
for container-based deployments.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = "sqlite:///./data/sls.db"

    terminology_server_url: str = "https://tx.fhir.org/r4"
    terminology_timeout_seconds: float = 30.0

    cors_origins: list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"

    @property
    def sqlalchemy_database_uri(self) -> str:
        return self.database_url

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.lower().startswith("sqlite")


settings = Settings()

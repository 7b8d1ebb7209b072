from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./todoflow.db"
    sql_echo: bool = False
    log_level: str = "INFO"

    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30
    refresh_token_expire_days: int = 7
    jwt_issuer: str = "todo-app"
    jwt_audience: str = "todo-app-users"

    # Refresh token cookie
    refresh_cookie_name: str = "refreshToken"
    cookie_secure: bool = False

    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Used by todoflow.client
    api_base_url: str = "http://localhost:8000"
    client_timeout_seconds: float = 30.0

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_DAYS: int = 7
    APP_NAME: str = "FitCoach API"
    CORS_ORIGINS: str = "http://localhost:5173"
    LOG_LEVEL: str = "INFO"

    # Datastore bounds
    STORE_TIMEOUT_SECONDS: float = 10.0
    MESSAGE_HISTORY_LIMIT: int = 500
    MESSAGE_MAX_LENGTH: int = 2000

    # Realtime channel
    REALTIME_BUFFER_SIZE: int = 100
    REALTIME_RECONNECT_DELAY_SECONDS: float = 1.0
    REALTIME_MAX_RECONNECT_ATTEMPTS: int = 5

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


settings = Settings()

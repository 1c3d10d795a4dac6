from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ghl_api_key: str = ""
    ghl_location_id: str = ""
    ghl_base_url: str = "https://services.leadconnectorhq.com"
    ghl_api_version: str = "2021-07-28"
    ghl_rate_limit_delay: float = 0.25
    ghl_request_timeout: float = 30.0
    link_check_timeout: float = 5.0
    deployments_dir: str = "deployments"
    database_url: str = ""
    spam_trigger_words: list[str] = ["FREE!!!", "act now", "limited time", "click here"]


settings = Settings()

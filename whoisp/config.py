from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Model provider
    model_provider: str = "gemini"  # gemini | openrouter

    # Gemini (Google GenAI)
    gemini_model: str = "gemini-flash-latest"
    google_api_key: str = ""
    gemini_api_key: str = ""  # used when GOOGLE_API_KEY is unset
    google_genai_use_vertexai: bool = False
    google_cloud_project: str = ""
    google_cloud_location: str = ""

    # OpenRouter (OpenAI-compatible gateway)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "google/gemini-2.5-flash"

    # Subject image lookup
    google_cse_api_key: str = ""
    google_cse_cx: str = ""
    wikimedia_contact_email: str = "contact@whoisp.local"
    image_search_timeout_s: float = 15.0
    image_cache_ttl_s: int = 300
    subject_cache_ttl_s: int = 1800
    max_images: int = 10

    # Pipeline timeouts / retries
    plan_timeout_s: float = 30.0
    evidence_timeout_s: float = 60.0
    synthesis_timeout_s: float = 45.0
    partial_report_timeout_s: float = 5.0
    retry_max_retries: int = 2
    retry_base_delay_s: float = 1.0
    disconnect_poll_interval_s: float = 0.5

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()

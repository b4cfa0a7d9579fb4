"""Application configuration using pydantic-settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="CLINEX_",
    )

    # Application
    app_name: str = "Clinical Extraction Core"
    debug: bool = False
    log_level: str = "INFO"

    # LLM collaborator (OpenAI-compatible chat completions endpoint)
    llm_enabled: bool = False
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: str | None = None
    llm_model: str = "gpt-4o-mini"
    llm_timeout_seconds: float = 30.0
    llm_max_tokens: int = 2000
    llm_temperature: float = 0.0

    # Pricing used for UsageReport cost estimates (USD per 1k tokens)
    llm_cost_per_1k_prompt_tokens: float = 0.00015
    llm_cost_per_1k_completion_tokens: float = 0.0006

    # Pipeline thresholds
    dedup_similarity_threshold: float = 0.85
    dedup_length_ratio: float = 0.5
    refinement_quality_threshold: float = 0.75

    @property
    def llm_configured(self) -> bool:
        """Whether the LLM collaborator can be called."""
        return self.llm_enabled and bool(self.llm_api_key)


settings = Settings()

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    log_level: str = "info"
    # Log every model turn (thoughts, raw text) at info level
    log_model_output: bool = False

    # LLM Provider (OpenRouter-compatible chat completions, streamed)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai"
    openrouter_model: str = "mistralai/mistral-small-3.1-24b-instruct:free"
    # Comma-separated list of models tried after the primary one
    openrouter_model_fallback: str = ""
    # Defaults to the number of configured models when unset
    openrouter_model_max_attempts: int | None = Field(default=None, gt=0)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    max_output_tokens: int = Field(default=1024, gt=0)

    # Simulation
    agent_count: int = Field(default=5, gt=0)
    simulation_timeout_seconds: float | None = Field(default=None, gt=0)
    isolate_agent_failures: bool = False

    # Structured agent output (JSONL)
    agent_output_log: bool = False
    agent_output_log_dir: Path = Path("logs/agent-output")

    @property
    def fallback_models(self) -> list[str]:
        return [m.strip() for m in self.openrouter_model_fallback.split(",") if m.strip()]

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()

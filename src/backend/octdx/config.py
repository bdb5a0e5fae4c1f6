"""
Application configuration via environment variables.
"""
from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment / .env file."""

    # App
    app_name: str = "OCT Diagnosis Agent"
    debug: bool = True

    # CORS
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Gemini
    gemini_api_key: str = ""
    classification_model: str = "gemini-2.5-pro"
    image_model: str = "gemini-2.5-flash-image"
    gateway_timeout_seconds: Optional[float] = None  # None = wait as long as the service does

    # Analysis
    confidence_threshold: float = 70

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


settings = Settings()

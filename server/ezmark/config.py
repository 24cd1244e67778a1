import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application configuration settings"""

    # Application
    app_name: str = "EZMark Grading Server"
    debug: bool = False
    api_version: str = "v1"

    # Server
    host: str = "0.0.0.0"
    port: int = 1337
    rest_prefix: str = "/api"
    strip_prefix: str = "/strapi"

    # Database
    database_url: str = "sqlite:///./ezmark.db"

    # Public files (uploads, pipeline artifacts and exam PDFs)
    public_dir: str = "./public"

    # OpenAI
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None

    # Qwen (DashScope OpenAI-compatible endpoint)
    qwen_api_key: Optional[str] = None
    qwen_base_url: Optional[str] = None

    # Vision models per pipeline stage
    matching_provider: Optional[str] = None
    matching_model_name: Optional[str] = None
    objective_provider: Optional[str] = None
    objective_model_name: Optional[str] = None
    subjective_provider: Optional[str] = None
    subjective_model_name: Optional[str] = None

    # Pipeline tuning
    render_resolution: int = 216  # 3x the 72dpi PDF viewport
    crop_padding: int = 10
    llm_concurrency: int = 8
    similarity_threshold: float = 0.75
    subjective_prefetch: bool = False

    # CORS
    cors_origins: str = "http://localhost:3000"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string"""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def uploads_dir(self) -> str:
        return os.path.join(self.public_dir, "uploads")

    @property
    def pipeline_dir(self) -> str:
        return os.path.join(self.public_dir, "pipeline")

    @property
    def pdf_dir(self) -> str:
        return os.path.join(self.public_dir, "pdf")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = Settings()

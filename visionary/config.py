"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_anon_key: str = ""

    # Replicate inference API
    replicate_api_token: str = ""
    replicate_base_url: str = "https://api.replicate.com/v1"
    replicate_timeout_seconds: float = 30.0
    face_swap_model: str = (
        "cdingram/face-swap:d1d6ea8c8be89d664a07a457526f7128109dee7030fdac424788d762c71ed111"
    )

    # Prompt enhancement (OpenAI-compatible chat completions)
    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    prompt_enhancer_model: str = "gpt-4o-mini"

    # Tables
    history_table: str = "creation_history"
    metadata_table: str = "processing_metadata"

    # Storage
    user_uploads_bucket: str = "user-uploads"
    generated_bucket: str = "ai-generated"
    final_folder: str = "final"
    user_upload_signed_url_ttl: int = 36000  # 10 hours
    storage_signed_url_ttl: int = 3600
    saved_media_signed_url_ttl: int = 86400

    # Outbound probes and media fetches
    probe_timeout_seconds: float = 5.0
    fetch_timeout_seconds: float = 10.0

    # Polling
    poll_interval_seconds: float = 4.0
    poll_switch_delay_seconds: float = 2.0
    stuck_threshold_seconds: int = 180

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()

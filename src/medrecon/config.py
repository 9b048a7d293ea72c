"""Configuration management for the medical record reconciliation pipeline."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # LLM endpoint
    llm_host: str = "http://localhost:11434"
    llm_api_style: str = "ollama"  # "ollama" or "openai"
    llm_model: str = "llama3.2:1b"
    llm_api_key: str = ""
    llm_temperature: float = 0.1
    llm_top_p: float = 0.9
    llm_max_tokens: int = 3000
    llm_timeout_seconds: int = 120
    llm_connect_timeout: int = 10
    llm_retry_attempts: int = 3
    llm_retry_delay: float = 1.0
    llm_retry_backoff: float = 2.0
    llm_embedding_model: str = "nomic-embed-text"

    # Rendering / OCR
    render_scale: float = 2.0
    ocr_pool_size: int = 2
    ocr_max_pool_size: int = 20
    ocr_language: str = "eng"
    ocr_psm: int = 6
    ocr_min_confidence: float = 30.0
    ocr_binarize: bool = False
    text_layer_min_chars: int = 100

    # Chunking
    chunk_size: int = 10000
    chunk_overlap: int = 1000

    # Reconciliation
    max_reference_matches: int = 3
    highlight_padding: float = 1.0

    # Optional features
    enable_embeddings: bool = False

    # Logging
    log_level: str = "INFO"

    @property
    def effective_pool_size(self) -> int:
        """Configured pool size clamped to the supported range."""
        return max(1, min(self.ocr_pool_size, self.ocr_max_pool_size))

    class Config:
        env_prefix = "MEDRECON_"
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()

"""
Configuration management for the deal extraction pipeline.

Loads settings from environment variables with sensible defaults.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env file from project root
_project_root = Path(__file__).parent.parent.parent
_env_file = _project_root / '.env'
if _env_file.exists():
    load_dotenv(_env_file)


class Config:
    """Configuration settings loaded from environment."""

    # OpenAI (structuring stage)
    OPENAI_API_KEY: str = os.getenv('OPENAI_API_KEY', '')
    OPENAI_CHAT_MODEL: str = os.getenv('OPENAI_CHAT_MODEL', 'gpt-4.1-mini')

    # Document store
    DOCUMENT_ROOT: str = os.getenv('DOCUMENT_ROOT', str(_project_root / 'uploads'))

    # Optional clarification persistence
    DATABASE_URL: str = os.getenv('DATABASE_URL', '')

    # Clarifications
    BLOCKING_PRIORITY_THRESHOLD: int = int(os.getenv('BLOCKING_PRIORITY_THRESHOLD', '8'))
    AUTO_RESOLVE_CONFIDENCE: float = float(os.getenv('AUTO_RESOLVE_CONFIDENCE', '0.95'))

    # Session policies
    PAUSE_POLICY: str = os.getenv('PAUSE_POLICY', 'end_of_batch')
    ALL_FAILED_POLICY: str = os.getenv('ALL_FAILED_POLICY', 'error')

    # Progress events
    EVENT_BUFFER_SIZE: int = int(os.getenv('EVENT_BUFFER_SIZE', '256'))
    EVENT_HISTORY_SIZE: int = int(os.getenv('EVENT_HISTORY_SIZE', '100'))

    # Registry eviction
    SESSION_TTL_SECONDS: float = float(os.getenv('SESSION_TTL_SECONDS', '3600'))
    EVICTION_INTERVAL_SECONDS: float = float(os.getenv('EVICTION_INTERVAL_SECONDS', '60'))

    LOG_LEVEL: str = os.getenv('LOG_LEVEL', 'INFO')
    LOG_JSON: bool = os.getenv('LOG_JSON', 'false').lower() in ('1', 'true', 'yes')

    @classmethod
    def validate(cls) -> list[str]:
        """
        Validate that required configuration is present.

        Returns:
            List of missing required configuration keys
        """
        missing = []
        if not cls.OPENAI_API_KEY:
            missing.append('OPENAI_API_KEY')
        if not cls.DOCUMENT_ROOT:
            missing.append('DOCUMENT_ROOT')
        return missing


# Singleton config instance
config = Config()

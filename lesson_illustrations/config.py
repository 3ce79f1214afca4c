"""
Configuration for the lesson illustration pipeline.
"""
import os
from dataclasses import dataclass


@dataclass
class AppConfig:
    """Application configuration loaded from environment variables"""

    # Gemini
    gemini_api_key: str = ""
    image_analysis_model: str = "gemma-3-27b-it"
    keyword_model: str = "gemini-2.5-flash"

    # Image sources
    pixabay_api_key: str = ""
    wikimedia_api_url: str = "https://commons.wikimedia.org/w/api.php"
    pixabay_api_url: str = "https://pixabay.com/api/"
    user_agent: str = "LessonIllustrations/1.0 (Educational slide images)"
    wikimedia_fetch_count: int = 3
    pixabay_fetch_count: int = 2

    # Image sizes
    analysis_width_px: int = 200
    display_width_px: int = 600
    min_image_bytes: int = 500
    max_image_bytes: int = 8_000_000
    max_oracle_candidates: int = 3

    # Placeholder
    placeholder_template: str = "https://placehold.co/800x450/27272a/71717a?text={text}"
    placeholder_text_length: int = 20

    # Timeouts (seconds)
    search_timeout: float = 10.0
    image_fetch_timeout: float = 8.0
    model_timeout: float = 30.0
    module_generation_timeout: float = 90.0

    # Pacing (seconds)
    image_analysis_interval: float = 3.0
    image_cooldown: float = 3.0
    module_cooldown: float = 5.0

    # Negotiation loop
    max_selection_attempts: int = 4

    # Retry configuration for rate-limited model calls
    max_retries: int = 2
    retry_backoff_seconds: float = 2.0

    # Logging
    log_level: str = "INFO"


def load_config() -> AppConfig:
    """Load configuration from environment variables"""
    return AppConfig(
        # Gemini (API_KEY accepted as a fallback name)
        gemini_api_key=os.getenv('GEMINI_API_KEY', os.getenv('API_KEY', '')),
        image_analysis_model=os.getenv('IMAGE_ANALYSIS_MODEL', 'gemma-3-27b-it'),
        keyword_model=os.getenv('KEYWORD_MODEL', 'gemini-2.5-flash'),

        # Image sources
        pixabay_api_key=os.getenv('PIXABAY_API_KEY', os.getenv('PIXABAY_KEY', '')),
        wikimedia_api_url=os.getenv('WIKIMEDIA_API_URL', 'https://commons.wikimedia.org/w/api.php'),
        pixabay_api_url=os.getenv('PIXABAY_API_URL', 'https://pixabay.com/api/'),
        user_agent=os.getenv('IMAGE_SEARCH_USER_AGENT', 'LessonIllustrations/1.0 (Educational slide images)'),
        wikimedia_fetch_count=int(os.getenv('WIKIMEDIA_FETCH_COUNT', '3')),
        pixabay_fetch_count=int(os.getenv('PIXABAY_FETCH_COUNT', '2')),

        # Sizes
        analysis_width_px=int(os.getenv('ANALYSIS_WIDTH_PX', '200')),
        display_width_px=int(os.getenv('DISPLAY_WIDTH_PX', '600')),
        min_image_bytes=int(os.getenv('MIN_IMAGE_BYTES', '500')),
        max_image_bytes=int(os.getenv('MAX_IMAGE_BYTES', '8000000')),
        max_oracle_candidates=int(os.getenv('MAX_ORACLE_CANDIDATES', '3')),

        # Placeholder
        placeholder_template=os.getenv(
            'PLACEHOLDER_TEMPLATE',
            'https://placehold.co/800x450/27272a/71717a?text={text}',
        ),
        placeholder_text_length=int(os.getenv('PLACEHOLDER_TEXT_LENGTH', '20')),

        # Timeouts
        search_timeout=float(os.getenv('SEARCH_TIMEOUT', '10')),
        image_fetch_timeout=float(os.getenv('IMAGE_FETCH_TIMEOUT', '8')),
        model_timeout=float(os.getenv('MODEL_TIMEOUT', '30')),
        module_generation_timeout=float(os.getenv('MODULE_GENERATION_TIMEOUT', '90')),

        # Pacing
        image_analysis_interval=float(os.getenv('IMAGE_ANALYSIS_INTERVAL', '3.0')),
        image_cooldown=float(os.getenv('IMAGE_COOLDOWN', '3.0')),
        module_cooldown=float(os.getenv('MODULE_COOLDOWN', '5.0')),

        max_selection_attempts=int(os.getenv('MAX_SELECTION_ATTEMPTS', '4')),

        # Retry
        max_retries=int(os.getenv('MAX_RETRIES', '2')),
        retry_backoff_seconds=float(os.getenv('RETRY_BACKOFF_SECONDS', '2.0')),

        # Logging
        log_level=os.getenv('LOG_LEVEL', 'INFO'),
    )


# Global config instance
config = load_config()

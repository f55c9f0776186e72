"""
Main entry point for the bank statement import service.

Loads .env, validates configuration and the category catalog, then serves
the FastAPI app with uvicorn.
"""
import sys
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).parent

# Environment must be in place before settings are first read
_env_file = PROJECT_ROOT / ".env"
if _env_file.exists():
    load_dotenv(_env_file)

from core.catalog import load_cascade_config, load_categories  # noqa: E402
from core.config import Settings, get_settings  # noqa: E402
from core.exceptions import BankImportException, ConfigurationError  # noqa: E402
from core.logger import set_log_level, setup_logger  # noqa: E402

logger = setup_logger(__name__)


def check_startup(settings: Settings) -> None:
    """
    Fail fast on configuration that would break every import.

    Raises:
        ConfigurationError: If the gateway key is missing or a catalog file is invalid
    """
    if not settings.llm_api_key:
        raise ConfigurationError(
            "LLM_API_KEY environment variable not set",
            details={"required_key": "LLM_API_KEY"},
        )

    try:
        categories = load_categories(settings.categories_path)
        config = load_cascade_config(settings.cascade_rules_path)
    except BankImportException as e:
        raise ConfigurationError(f"Catalog check failed: {e.message}", details=e.details)

    active = sum(1 for c in categories if c.is_active)
    logger.info(
        f"Catalog: {active} active categories, {len(config.context_rules)} context rules, "
        f"{len(config.labels)} labels"
    )


def main():
    """Main application entry point."""
    try:
        settings = get_settings()
        set_log_level(settings.log_level)

        if not _env_file.exists():
            logger.warning(".env file not found. Using environment variables or defaults.")

        check_startup(settings)

        import uvicorn
        from app.api import app

        logger.info(f"Starting {settings.app_name}")
        logger.info(f"Extraction model: {settings.extraction_model}, classifier model: {settings.classifier_model}")
        logger.info(
            f"Batching: {settings.batch_size} rows x {settings.max_concurrent_batches} in parallel, "
            f"{settings.max_retries} retries (base delay {settings.retry_base_delay}s)"
        )
        logger.info(f"Storage: {settings.storage_path}, database: {settings.database_path}")
        logger.info(f"Starting server on {settings.host}:{settings.port}")

        uvicorn.run(
            app,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower()
        )

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e.message}")
        if e.details:
            logger.error(f"Details: {e.details}")
        sys.exit(1)

    except Exception as e:
        logger.error(f"Failed to start application: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

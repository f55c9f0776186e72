"""
Loading of categories, user rules and cascade configuration from JSON files.
"""
import json
from pathlib import Path
from typing import Any, List, Optional

from pydantic import TypeAdapter, ValidationError

from core.cascade import CascadeConfig
from core.config import get_settings
from core.exceptions import ConfigurationError, DataNotFoundError
from core.logger import setup_logger
from core.schema import Category, UserRule

logger = setup_logger(__name__)

_categories_adapter = TypeAdapter(List[Category])
_user_rules_adapter = TypeAdapter(List[UserRule])


def _read_json(path: str) -> Any:
    file_path = Path(path)
    if not file_path.exists():
        raise DataNotFoundError(f"File not found: {path}", details={"file_path": path})
    try:
        return json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not read {file_path.name}", details={"file_path": path, "error": str(e)})


def load_categories(path: Optional[str] = None) -> List[Category]:
    """
    Load the category catalog.

    Args:
        path: JSON file with a list of categories (defaults to configured path)

    Returns:
        Categories in file order

    Raises:
        DataNotFoundError: If the file doesn't exist
        ConfigurationError: If the file is invalid or codes repeat
    """
    path = path or get_settings().categories_path
    try:
        categories = _categories_adapter.validate_python(_read_json(path))
    except ValidationError as e:
        raise ConfigurationError("Invalid category file", details={"file_path": path, "error": str(e)})

    codes = [c.code for c in categories if c.is_active]
    duplicates = sorted({code for code in codes if codes.count(code) > 1})
    if duplicates:
        raise ConfigurationError(
            f"Duplicate active category codes: {', '.join(duplicates)}",
            details={"file_path": path},
        )

    logger.info(f"Loaded {len(categories)} categories from {Path(path).name}")
    return categories


def load_user_rules(path: Optional[str] = None) -> List[UserRule]:
    """Load operator rules; no configured path means no rules."""
    path = path or get_settings().user_rules_path
    if not path:
        return []
    try:
        rules = _user_rules_adapter.validate_python(_read_json(path))
    except ValidationError as e:
        raise ConfigurationError("Invalid user rule file", details={"file_path": path, "error": str(e)})
    logger.info(f"Loaded {len(rules)} user rules from {Path(path).name}")
    return rules


def load_cascade_config(path: Optional[str] = None) -> CascadeConfig:
    """Load context rules, labels, negative patterns and amount buckets."""
    path = path or get_settings().cascade_rules_path
    try:
        config = CascadeConfig.model_validate(_read_json(path))
    except ValidationError as e:
        raise ConfigurationError("Invalid cascade rule file", details={"file_path": path, "error": str(e)})
    logger.info(
        f"Loaded cascade rules: {len(config.context_rules)} context, {len(config.labels)} labels, "
        f"{len(config.amount_rules)} amount rules"
    )
    return config

"""
YAML configuration loader for classification tables.

Loads taxonomy definitions from YAML files with:
- Environment variable substitution
- Category validation
- Packaged defaults
"""

import os
import re
from pathlib import Path
from typing import Optional

import yaml
import structlog

from ..classifier.rules import RuleSet, build_rule_set

logger = structlog.get_logger(__name__)

DEFAULT_TAXONOMY = "taxonomy.yml"


def substitute_env_vars(text: str) -> str:
    """
    Substitute environment variables in text.

    Supports formats:
    - ${VAR_NAME} - required, empty with a warning if missing
    - ${VAR_NAME:-default} - optional with default

    Args:
        text: Text with env var placeholders

    Returns:
        Text with substituted values
    """
    def replace(match):
        var_expr = match.group(1)
        if ":-" in var_expr:
            var_name, default = var_expr.split(":-", 1)
            return os.getenv(var_name, default)
        value = os.getenv(var_expr)
        if value is None:
            logger.warning("env_var_not_set", var=var_expr)
            return ""
        return value

    return re.sub(r"\$\{([^}]+)\}", replace, text)


class ConfigLoader:
    """
    Configuration loader for classification tables.

    Loads YAML config files and turns them into rule sets.
    """

    def __init__(self, config_dir: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_dir: Directory containing config files
                       (defaults to package config directory)
        """
        if config_dir:
            self.config_dir = Path(config_dir)
        else:
            self.config_dir = Path(__file__).parent

    def load_file(self, filename: str) -> dict:
        """
        Load YAML config file.

        Args:
            filename: Config file name (relative to config_dir)

        Returns:
            Parsed config dict
        """
        filepath = self.config_dir / filename

        if not filepath.exists():
            raise FileNotFoundError(f"Config file not found: {filepath}")

        logger.info("loading_config", file=str(filepath))

        with open(filepath, "r", encoding="utf-8") as f:
            content = f.read()

        content = substitute_env_vars(content)
        config = yaml.safe_load(content)

        if config is not None and not isinstance(config, dict):
            raise ValueError(f"Config root must be a mapping: {filepath}")

        return config or {}

    def load_rule_set(self, filename: str = DEFAULT_TAXONOMY) -> RuleSet:
        """
        Load the industry/regional taxonomy.

        Args:
            filename: Taxonomy file name

        Returns:
            RuleSet with rules sorted by priority

        Raises:
            ValueError: If the file names an unknown category
        """
        config = self.load_file(filename)
        rule_set = build_rule_set(config)

        logger.info(
            "taxonomy_loaded",
            file=filename,
            rules=len(rule_set),
            regional_markers=len(rule_set.regional_keywords) + len(rule_set.regional_patterns),
        )
        return rule_set


def load_rule_set(config_path: Optional[str] = None) -> RuleSet:
    """
    Convenience function to load the taxonomy.

    Args:
        config_path: Optional path to a taxonomy YAML file

    Returns:
        RuleSet
    """
    if config_path:
        path = Path(config_path)
        return ConfigLoader(str(path.parent)).load_rule_set(path.name)
    return ConfigLoader().load_rule_set()

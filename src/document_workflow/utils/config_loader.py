"""Configuration loading and validation for the document workflow engine.

This module loads the engine configuration from a YAML file, applies
overrides from the environment (optionally read from a ``.env`` file), and
resolves relative filesystem paths against the project root.

Environment overrides use the ``DOCWF__<SECTION>__<KEY>`` naming scheme and
are parsed as YAML scalars, so ``DOCWF__POLLING__TIMEOUT_SECONDS=120`` sets
``polling.timeout_seconds`` to the integer 120.

Typical usage example:
    config = Config.load()
    errors = Config.validate(config)
    if errors:
        raise ConfigurationError(f"Configuration invalid: {errors}")
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

ENV_OVERRIDE_PREFIX = "DOCWF__"
PERSISTENCE_BACKENDS = ("memory", "sqlite")


class WorkflowConfig:
    """Container for workflow engine configuration parameters.

    Attributes:
        classification: Classification routing settings
            (confidence_threshold, type_aliases).
        polling: Async job poller settings (intervals, jitter, timeout).
        retry: Retry policy settings per task state.
        extraction: Extraction settings (epsilon, provider_order, templates).
        validation: Validator settings (tolerance).
        notification: Manual review notification settings.
        persistence: Transition store settings (backend, sqlite_path).
        services: Collaborator endpoints and credential variable names.
        logging: Logging configuration (level, format).
    """

    REQUIRED_SECTIONS = [
        "classification",
        "polling",
        "retry",
        "extraction",
        "validation",
        "notification",
        "persistence",
        "services",
        "logging",
    ]

    def __init__(self, **config_dict: Dict[str, Any]) -> None:
        """Initialize WorkflowConfig from configuration dictionary.

        Args:
            **config_dict: Configuration dictionary with every key listed in
                REQUIRED_SECTIONS.

        Raises:
            KeyError: If any required configuration section is missing.
        """
        missing_keys = [
            key for key in self.REQUIRED_SECTIONS if key not in config_dict
        ]
        if missing_keys:
            raise KeyError(f"Missing required configuration sections: {missing_keys}")

        self.classification: Dict[str, Any] = config_dict["classification"]
        self.polling: Dict[str, Any] = config_dict["polling"]
        self.retry: Dict[str, Any] = config_dict["retry"]
        self.extraction: Dict[str, Any] = config_dict["extraction"]
        self.validation: Dict[str, Any] = config_dict["validation"]
        self.notification: Dict[str, Any] = config_dict["notification"]
        self.persistence: Dict[str, Any] = config_dict["persistence"]
        self.services: Dict[str, Any] = config_dict["services"]
        self.logging: Dict[str, Any] = config_dict["logging"]

    def to_dict(self) -> Dict[str, Any]:
        """Return the configuration as a plain nested dictionary."""
        return {key: getattr(self, key) for key in self.REQUIRED_SECTIONS}


class Config:
    """Static utility class for loading and validating configuration files."""

    # Configuration keys holding paths relative to the project root
    _RELATIVE_PATH_KEYS = [
        "persistence.sqlite_path",
    ]

    @staticmethod
    def project_root() -> Path:
        """Return the project root (three levels above the package)."""
        return Path(__file__).resolve().parent.parent.parent.parent

    @staticmethod
    def _resolve_nested_path(
        config_dict: Dict[str, Any], key_path: str, project_root: Path
    ) -> None:
        """Resolve a nested config path to an absolute path in-place.

        Missing or null values are left untouched so optional paths can be
        omitted.

        Args:
            config_dict: Configuration dictionary to modify in-place.
            key_path: Dot-separated path to the key (e.g., "persistence.sqlite_path").
            project_root: Project root directory for resolving relative paths.
        """
        keys = key_path.split(".")
        current = config_dict

        for key in keys[:-1]:
            current = current.get(key)
            if not isinstance(current, dict):
                return

        final_key = keys[-1]
        value = current.get(final_key)
        if value:
            current[final_key] = str(project_root / value)

    @staticmethod
    def apply_env_overrides(
        config_dict: Dict[str, Any], environ: Optional[Mapping[str, str]] = None
    ) -> List[str]:
        """Apply ``DOCWF__SECTION__KEY`` environment overrides in-place.

        Args:
            config_dict: Configuration dictionary to modify.
            environ: Environment mapping. Defaults to ``os.environ``.

        Returns:
            Dot-separated keys that were overridden.
        """
        environ = os.environ if environ is None else environ
        applied: List[str] = []

        for name, raw_value in sorted(environ.items()):
            if not name.startswith(ENV_OVERRIDE_PREFIX):
                continue
            keys = [
                part.lower()
                for part in name[len(ENV_OVERRIDE_PREFIX):].split("__")
                if part
            ]
            if len(keys) < 2 or keys[0] not in config_dict:
                continue

            current = config_dict
            for key in keys[:-1]:
                current = current.setdefault(key, {})
                if not isinstance(current, dict):
                    break
            else:
                current[keys[-1]] = yaml.safe_load(raw_value)
                applied.append(".".join(keys))

        return applied

    @staticmethod
    def load(
        config_path: Optional[str] = "config/workflow_config.yaml",
        env_file: Optional[str] = None,
    ) -> WorkflowConfig:
        """Load workflow configuration from a YAML file.

        Reads the YAML file, loads ``env_file`` (or a ``.env`` found from the
        working directory) into the process environment without overriding
        variables that are already set, applies ``DOCWF__`` overrides and
        resolves relative paths.

        Args:
            config_path: Path to the configuration YAML file, relative to the
                project root unless absolute.
            env_file: Optional path to a dotenv file.

        Returns:
            WorkflowConfig object containing the loaded configuration.

        Raises:
            FileNotFoundError: If the configuration file does not exist.
            yaml.YAMLError: If the configuration file is not valid YAML.
            KeyError: If required configuration sections are missing.
            ValueError: If the configuration file doesn't contain a dictionary.
        """
        project_root = Config.project_root()
        config_file_path = project_root / config_path

        if not config_file_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_file_path}")

        try:
            with open(config_file_path, "r", encoding="utf-8") as f:
                config_dict = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(
                f"Failed to parse configuration file: {config_file_path}"
            ) from e

        if not isinstance(config_dict, dict):
            raise ValueError("Configuration file must contain a YAML dictionary")

        load_dotenv(dotenv_path=env_file, override=False)
        Config.apply_env_overrides(config_dict)

        for path_key in Config._RELATIVE_PATH_KEYS:
            Config._resolve_nested_path(config_dict, path_key, project_root)

        return WorkflowConfig(**config_dict)

    @staticmethod
    def from_dict(config_dict: Dict[str, Any]) -> WorkflowConfig:
        """Build a WorkflowConfig from an in-memory dictionary.

        Args:
            config_dict: Nested configuration dictionary.

        Returns:
            WorkflowConfig instance.
        """
        return WorkflowConfig(**config_dict)

    @staticmethod
    def resolve_secret(config: WorkflowConfig, name: str) -> Optional[str]:
        """Read a credential whose variable name is configured in ``services``.

        The ``services`` section stores variable names under ``<name>_env``
        keys (for example ``classification_api_key_env``); the value itself
        always comes from the environment.

        Args:
            config: Loaded configuration.
            name: Credential name without the ``_env`` suffix.

        Returns:
            The environment value, or None if unset.

        Raises:
            KeyError: If no ``<name>_env`` entry is configured.
        """
        env_key = f"{name}_env"
        if env_key not in config.services:
            raise KeyError(f"No credential variable configured for: {name}")
        return os.environ.get(config.services[env_key])

    @staticmethod
    def validate(config: WorkflowConfig) -> List[str]:
        """Validate value ranges of the configuration.

        Args:
            config: WorkflowConfig object to validate.

        Returns:
            List of error messages. Empty list if the configuration is valid.
        """
        errors: List[str] = []

        threshold = config.classification.get("confidence_threshold")
        if not isinstance(threshold, (int, float)) or not 0.0 <= threshold <= 1.0:
            errors.append(
                f"classification.confidence_threshold must be in [0, 1], got {threshold}"
            )

        for key in ["initial_interval_seconds", "max_interval_seconds", "timeout_seconds"]:
            value = config.polling.get(key)
            if not isinstance(value, (int, float)) or value <= 0:
                errors.append(f"polling.{key} must be positive, got {value}")

        multiplier = config.polling.get("backoff_multiplier", 2.0)
        if not isinstance(multiplier, (int, float)) or multiplier < 1.0:
            errors.append(f"polling.backoff_multiplier must be >= 1, got {multiplier}")

        jitter = config.polling.get("jitter_ratio", 0.0)
        if not isinstance(jitter, (int, float)) or not 0.0 <= jitter < 1.0:
            errors.append(f"polling.jitter_ratio must be in [0, 1), got {jitter}")

        for state_name, policy in config.retry.items():
            if not isinstance(policy, dict):
                errors.append(f"retry.{state_name} must be a mapping")
                continue
            if policy.get("max_attempts", 0) < 0:
                errors.append(f"retry.{state_name}.max_attempts must be >= 0")
            if policy.get("interval_seconds", 1.0) < 0:
                errors.append(f"retry.{state_name}.interval_seconds must be >= 0")

        for key in ["epsilon"]:
            value = config.extraction.get(key, 0.0)
            if not isinstance(value, (int, float)) or value < 0:
                errors.append(f"extraction.{key} must be non-negative, got {value}")

        tolerance = config.validation.get("tolerance", 0.0)
        if not isinstance(tolerance, (int, float)) or tolerance < 0:
            errors.append(f"validation.tolerance must be non-negative, got {tolerance}")

        backend = config.persistence.get("backend")
        if backend not in PERSISTENCE_BACKENDS:
            errors.append(
                f"persistence.backend must be one of {PERSISTENCE_BACKENDS}, got {backend}"
            )
        elif backend == "sqlite" and not config.persistence.get("sqlite_path"):
            errors.append("persistence.sqlite_path is required for the sqlite backend")

        if not config.notification.get("manual_review_topic"):
            errors.append("notification.manual_review_topic must be set")

        return errors

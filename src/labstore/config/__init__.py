"""
labstore config package public API.

Purpose
- Export config loading/validation entrypoints and the typed settings objects.
"""

from labstore.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    load_config,
    normalize_paths,
)
from labstore.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    BackupSettings,
    CheckpointSettings,
    ConfigValidationError,
    ConfigValidationIssue,
    LabStoreConfig,
    LoggingSettings,
    RetrySettings,
    StoreSettings,
    assert_valid_config,
    default_config,
    merge_config,
    validate_config,
)

__all__ = [
    "BackupSettings",
    "CheckpointSettings",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "LabStoreConfig",
    "LoggingSettings",
    "PATH_FIELDS",
    "RetrySettings",
    "StoreSettings",
    "assert_valid_config",
    "default_config",
    "load_config",
    "merge_config",
    "normalize_paths",
    "validate_config",
]

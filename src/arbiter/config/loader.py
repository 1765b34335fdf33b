"""Configuration loading for Arbiter.

Functions:
    load_config: Load configuration from ~/.arbiter/config.yaml
    create_default_config: Write the default config.yaml
    ensure_config_dir: Ensure ~/.arbiter/ and its subdirectories exist
    resolve_database_url: Build the aiosqlite URL from the persistence section
    resolve_log_path: Resolve the log file from the logging section
    config_exists: Check whether config.yaml exists
"""

from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import ValidationError as PydanticValidationError
import yaml

# Provider API keys (OPENAI_API_KEY, GROQ_API_KEY, ...) live in .env files
load_dotenv()
load_dotenv(Path.home() / ".arbiter" / ".env")

from arbiter.config.models import ArbiterConfig, get_config_dir, get_default_config
from arbiter.core.errors import ConfigError


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Create the config directory with its data/ and logs/ subdirectories."""
    if config_dir is None:
        config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "data").mkdir(exist_ok=True)
    (config_dir / "logs").mkdir(exist_ok=True)
    return config_dir


def _model_to_yaml_dict(model: ArbiterConfig) -> dict[str, Any]:
    return model.model_dump(mode="json")


def create_default_config(
    config_dir: Path | None = None,
    *,
    overwrite: bool = False,
) -> Path:
    """Write config.yaml with every default spelled out.

    Args:
        config_dir: Directory to create the file in. Defaults to ~/.arbiter/
        overwrite: Replace an existing file instead of failing.

    Returns:
        Path of the written config.yaml.

    Raises:
        ConfigError: If the file exists and overwrite is False.
    """
    config_dir = ensure_config_dir(config_dir)
    config_path = config_dir / "config.yaml"

    if config_path.exists() and not overwrite:
        raise ConfigError(
            f"Configuration file already exists: {config_path}",
            config_file=str(config_path),
        )

    with config_path.open("w") as f:
        yaml.dump(
            _model_to_yaml_dict(get_default_config()),
            f,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )

    return config_path


def load_config(config_path: Path | None = None) -> ArbiterConfig:
    """Load and validate configuration from YAML.

    Args:
        config_path: Path to the config file. Defaults to ~/.arbiter/config.yaml.

    Returns:
        Validated ArbiterConfig.

    Raises:
        ConfigError: If the file is missing, malformed, or fails validation.
    """
    if config_path is None:
        config_path = get_config_dir() / "config.yaml"

    if not config_path.exists():
        raise ConfigError(
            f"Configuration file not found: {config_path}. "
            "Run `arbiter config init` to create default configuration.",
            config_file=str(config_path),
        )

    try:
        with config_path.open() as f:
            config_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Failed to parse configuration file: {e}",
            config_file=str(config_path),
            details={"yaml_error": str(e)},
        ) from e

    if config_dict is None:
        config_dict = {}

    if not isinstance(config_dict, dict):
        raise ConfigError(
            "Configuration file must contain a mapping at the top level",
            config_file=str(config_path),
        )

    try:
        return ArbiterConfig.model_validate(config_dict)
    except PydanticValidationError as e:
        error_messages = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            error_messages.append(f"  - {loc}: {error['msg']}")

        raise ConfigError(
            "Configuration validation failed:\n" + "\n".join(error_messages),
            config_file=str(config_path),
            details={"validation_errors": [m.strip() for m in error_messages]},
        ) from e


def load_config_or_default(config_path: Path | None = None) -> ArbiterConfig:
    """Load config.yaml if present, otherwise fall back to defaults.

    A present but invalid file still raises ConfigError.
    """
    if config_path is None:
        config_path = get_config_dir() / "config.yaml"
    if not config_path.exists():
        return get_default_config()
    return load_config(config_path)


def config_exists(config_dir: Path | None = None) -> bool:
    if config_dir is None:
        config_dir = get_config_dir()
    return (config_dir / "config.yaml").exists()


def resolve_database_url(config: ArbiterConfig, config_dir: Path | None = None) -> str:
    """Return the sqlite+aiosqlite URL for the configured database path.

    Relative paths are resolved against the config directory.
    """
    if config_dir is None:
        config_dir = get_config_dir()
    db_path = Path(config.persistence.database_path).expanduser()
    if not db_path.is_absolute():
        db_path = config_dir / db_path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{db_path}"


def resolve_log_path(config: ArbiterConfig, config_dir: Path | None = None) -> Path:
    """Return the log file path, resolved against the config directory."""
    if config_dir is None:
        config_dir = get_config_dir()
    log_path = Path(config.logging.log_path).expanduser()
    if not log_path.is_absolute():
        log_path = config_dir / log_path
    return log_path

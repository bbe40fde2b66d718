"""
Configuration management for tracksync
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

VALID_MODES = ("copy", "hardlink")


@dataclass
class LibraryConfig:
    """Configuration for the source library and its catalog."""

    catalog_dir: Optional[str] = None  # Default: data dir
    supported_formats: List[str] = field(
        default_factory=lambda: [".flac", ".mp3", ".ogg", ".opus", ".m4a", ".mp4"]
    )
    scan_workers: int = 4


@dataclass
class SyncConfig:
    """Configuration for sync passes."""

    default_mode: str = "copy"  # 'copy' or 'hardlink'
    workers: int = 4
    hash_chunk_size: int = 1024 * 1024
    parallel_destinations: bool = True

    def validate(self) -> None:
        """Validate sync configuration values.

        Raises:
            ValueError: If configuration values are invalid
        """
        if self.default_mode not in VALID_MODES:
            raise ValueError(
                f"Invalid default_mode: {self.default_mode}. "
                f"Valid modes are: {VALID_MODES}"
            )
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if self.hash_chunk_size < 1:
            raise ValueError("hash_chunk_size must be positive")


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_file: Optional[str] = None  # Default: data dir / tracksync.log
    console_output: bool = False  # Also output to stderr


@dataclass
class DestinationConfig:
    """A registered destination library."""

    name: str
    root: str
    mode: str = "copy"
    filter_file: Optional[str] = None

    def filter_path(self) -> Path:
        """Path of the filter script for this destination."""
        if self.filter_file:
            return Path(self.filter_file).expanduser()
        return get_config_dir() / "filters" / f"{self.name}.py"


@dataclass
class Config:
    """Main configuration object."""

    library: LibraryConfig = field(default_factory=LibraryConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    destinations: Dict[str, DestinationConfig] = field(default_factory=dict)

    def catalog_dir(self) -> Path:
        """Directory holding the source catalog."""
        override = os.environ.get("TRACKSYNC_CATALOG_DIR")
        if override:
            return Path(override).expanduser()
        if self.library.catalog_dir:
            return Path(self.library.catalog_dir).expanduser()
        return get_data_dir()


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    config_home = os.environ.get("XDG_CONFIG_HOME")
    if config_home:
        return Path(config_home) / "tracksync"
    return Path.home() / ".config" / "tracksync"


def get_data_dir() -> Path:
    """Get the data directory path."""
    data_home = os.environ.get("XDG_DATA_HOME")
    if data_home:
        return Path(data_home) / "tracksync"
    return Path.home() / ".local" / "share" / "tracksync"


def get_config_path() -> Path:
    """Get the main configuration file path.

    Checks the current working directory first, then the XDG config directory.
    """
    local_config = Path.cwd() / "config.toml"
    if local_config.exists():
        return local_config
    return get_config_dir() / "config.toml"


def create_default_config() -> str:
    """Create a default configuration TOML content."""
    return """
# tracksync configuration

[library]
# Directory holding the source catalog (default: ~/.local/share/tracksync)
# catalog_dir = "~/.local/share/tracksync"

# Audio file formats picked up by 'add' and 'update'
supported_formats = [".flac", ".mp3", ".ogg", ".opus", ".m4a", ".mp4"]

# Threads used for tag extraction and hashing
scan_workers = 4

[sync]
# Default materialization mode for new destinations (copy or hardlink)
default_mode = "copy"

# Threads used to copy/link files during a sync pass
workers = 4

# Read size used when hashing files
hash_chunk_size = 1048576

# Sync several destinations at the same time
parallel_destinations = true

[logging]
# Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
level = "INFO"

# Custom log file path (default: ~/.local/share/tracksync/tracksync.log)
# log_file = "/path/to/tracksync.log"

# Also output logs to stderr
console_output = false

# Destinations are added with 'tracksync dest add NAME ROOT'
# [destinations.car]
# root = "/media/usb/music"
# mode = "copy"
# filter_file = "~/.config/tracksync/filters/car.py"
""".strip()


def _parse_destinations(data: dict, default_mode: str) -> Dict[str, DestinationConfig]:
    destinations = {}
    for name, entry in data.items():
        if "root" not in entry:
            logger.warning(f"Destination '{name}' has no root, ignoring it")
            continue
        mode = entry.get("mode", default_mode)
        if mode not in VALID_MODES:
            logger.warning(
                f"Destination '{name}' has invalid mode '{mode}', using {default_mode}"
            )
            mode = default_mode
        destinations[name] = DestinationConfig(
            name=name,
            root=str(Path(entry["root"]).expanduser()),
            mode=mode,
            filter_file=entry.get("filter_file"),
        )
    return destinations


def load_config(config_path: Optional[Path] = None) -> Config:
    """Load configuration from file or create default.

    Environment variables (optionally from a .env file in the config
    directory) override TOML values:
    - TRACKSYNC_CATALOG_DIR
    """
    from dotenv import load_dotenv

    env_path = get_config_dir() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    config_path = config_path or get_config_path()

    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as f:
            f.write(create_default_config())
        logger.info(f"Created default configuration at: {config_path}")
        return Config()

    try:
        with open(config_path, "rb") as f:
            toml_data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.error(f"Error loading configuration from {config_path}: {e}")
        logger.warning("Using default configuration.")
        return Config()

    config = Config()

    if "library" in toml_data:
        library_data = toml_data["library"]
        config.library = LibraryConfig(
            catalog_dir=library_data.get("catalog_dir"),
            supported_formats=[
                fmt.lower()
                for fmt in library_data.get(
                    "supported_formats", config.library.supported_formats
                )
            ],
            scan_workers=library_data.get("scan_workers", config.library.scan_workers),
        )

    if "sync" in toml_data:
        sync_data = toml_data["sync"]
        config.sync = SyncConfig(
            default_mode=sync_data.get("default_mode", config.sync.default_mode),
            workers=sync_data.get("workers", config.sync.workers),
            hash_chunk_size=sync_data.get(
                "hash_chunk_size", config.sync.hash_chunk_size
            ),
            parallel_destinations=sync_data.get(
                "parallel_destinations", config.sync.parallel_destinations
            ),
        )
        try:
            config.sync.validate()
        except ValueError as e:
            logger.warning(f"Invalid sync configuration: {e}")
            logger.warning("Using default sync configuration.")
            config.sync = SyncConfig()

    if "logging" in toml_data:
        logging_data = toml_data["logging"]
        log_file = logging_data.get("log_file")
        if log_file:
            log_file = str(Path(log_file).expanduser())
        config.logging = LoggingConfig(
            level=logging_data.get("level", config.logging.level).upper(),
            log_file=log_file,
            console_output=logging_data.get(
                "console_output", config.logging.console_output
            ),
        )

    if "destinations" in toml_data:
        config.destinations = _parse_destinations(
            toml_data["destinations"], config.sync.default_mode
        )

    return config


def _toml_str(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def save_config(config: Config, config_path: Optional[Path] = None) -> None:
    """Save configuration to file.

    Raises:
        OSError: If the file cannot be written
    """
    config_path = config_path or get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    formats = ", ".join(_toml_str(f) for f in config.library.supported_formats)
    toml_content = f"""# tracksync configuration

[library]
supported_formats = [{formats}]
scan_workers = {config.library.scan_workers}"""

    if config.library.catalog_dir:
        toml_content += f"\ncatalog_dir = {_toml_str(config.library.catalog_dir)}"

    toml_content += f"""

[sync]
default_mode = {_toml_str(config.sync.default_mode)}
workers = {config.sync.workers}
hash_chunk_size = {config.sync.hash_chunk_size}
parallel_destinations = {str(config.sync.parallel_destinations).lower()}

[logging]
level = {_toml_str(config.logging.level)}
console_output = {str(config.logging.console_output).lower()}"""

    if config.logging.log_file:
        toml_content += f"\nlog_file = {_toml_str(config.logging.log_file)}"

    for name in sorted(config.destinations):
        dest = config.destinations[name]
        toml_content += f"""

[destinations.{_toml_str(name)}]
root = {_toml_str(dest.root)}
mode = {_toml_str(dest.mode)}"""
        if dest.filter_file:
            toml_content += f"\nfilter_file = {_toml_str(dest.filter_file)}"

    toml_content += "\n"

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(toml_content)


def ensure_directories() -> None:
    """Ensure all necessary directories exist."""
    get_config_dir().mkdir(parents=True, exist_ok=True)
    get_data_dir().mkdir(parents=True, exist_ok=True)

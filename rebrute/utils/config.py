"""
rebrute Configuration System
============================

Persistent configuration with:
- JSON storage
- Environment variable overrides
- Validation

Values here are defaults for the CLI; a job file or command-line flag
always wins over them.
"""

from __future__ import annotations

import os
import json
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List, Optional
import logging

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".rebrute"
CONFIG_FILE = CONFIG_DIR / "config.json"


@dataclass
class ToolsConfig:
    """Where compressors live and where output goes."""
    installations_dir: str = ""
    output_dir: str = field(
        default_factory=lambda: str(Path.home() / "rebrute" / "output")
    )


@dataclass
class VersionConfig:
    """Compressor major versions searched by default."""
    enabled_majors: List[int] = field(default_factory=lambda: [3, 4, 5, 6])
    probe_versions: bool = True  # Run executables to read the build number


@dataclass
class SearchDefaults:
    """Default search policy and switch values."""
    stop_on_first_match: bool = True
    delete_duplicate_crc_files: bool = True
    delete_rar_files: bool = False
    complete_all_volumes: bool = False
    rename_to_original: bool = False
    header_patching: bool = False
    compression_levels: List[int] = field(default_factory=lambda: [3])
    dictionary_sizes: List[str] = field(default_factory=lambda: ["4096k"])


@dataclass
class ProcessConfig:
    """Compressor process settings."""
    timeout_seconds: int = 0  # 0 = no limit
    poll_interval_ms: int = 200


@dataclass
class Config:
    """Main configuration container."""
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    versions: VersionConfig = field(default_factory=VersionConfig)
    search: SearchDefaults = field(default_factory=SearchDefaults)
    process: ProcessConfig = field(default_factory=ProcessConfig)
    version: str = "1.0.0"

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> Config:
        """Create from dictionary."""
        return cls(
            tools=ToolsConfig(**data.get("tools", {})),
            versions=VersionConfig(**data.get("versions", {})),
            search=SearchDefaults(**data.get("search", {})),
            process=ProcessConfig(**data.get("process", {})),
            version=data.get("version", "1.0.0")
        )

    def validate(self) -> List[str]:
        """Validate configuration. Returns list of errors."""
        errors = []

        for major in self.versions.enabled_majors:
            if major < 2 or major > 7:
                errors.append(f"Unsupported major version: {major}")

        for level in self.search.compression_levels:
            if level < 0 or level > 5:
                errors.append(f"Compression level must be between 0 and 5: {level}")

        if self.process.timeout_seconds < 0:
            errors.append("Timeout must be at least 0")

        if self.process.poll_interval_ms < 10 or self.process.poll_interval_ms > 10000:
            errors.append("Poll interval must be between 10 and 10000 ms")

        if self.search.rename_to_original and not self.search.stop_on_first_match:
            errors.append("Rename to original names requires stop on first match")

        return errors


def _parse_majors(value: str) -> List[int]:
    return [int(part) for part in value.replace(";", ",").split(",") if part.strip()]


def load_config(path: Optional[Path] = None) -> Config:
    """
    Load configuration from file.
    Falls back to defaults if not found.
    Supports environment variable overrides.
    """
    path = Path(path) if path is not None else CONFIG_FILE
    config = Config()

    # Load from file if exists
    if path.exists():
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
                config = Config.from_dict(data)
                logger.info(f"Loaded config from {path}")
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Failed to load config: {e}")

    # Environment variable overrides
    env_overrides = {
        "REBRUTE_INSTALLATIONS": ("tools", "installations_dir"),
        "REBRUTE_OUTPUT": ("tools", "output_dir"),
        "REBRUTE_TIMEOUT": ("process", "timeout_seconds", int),
        "REBRUTE_POLL_MS": ("process", "poll_interval_ms", int),
        "REBRUTE_VERSIONS": ("versions", "enabled_majors", _parse_majors),
    }

    for env_var, override in env_overrides.items():
        value = os.environ.get(env_var)
        if value:
            section, key = override[0], override[1]
            converter = override[2] if len(override) > 2 else str

            try:
                section_obj = getattr(config, section)
                setattr(section_obj, key, converter(value))
                logger.debug(f"Override from {env_var}: {section}.{key}")
            except ValueError as e:
                logger.warning(f"Failed to apply {env_var}: {e}")

    return config


def save_config(config: Config, path: Optional[Path] = None) -> bool:
    """
    Save configuration to file.
    Creates config directory if needed.
    """
    path = Path(path) if path is not None else CONFIG_FILE
    try:
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w', encoding='utf-8') as f:
            json.dump(config.to_dict(), f, indent=2)

        logger.info(f"Saved config to {path}")
        return True

    except OSError as e:
        logger.error(f"Failed to save config: {e}")
        return False


def ensure_directories(config: Config) -> None:
    """Ensure all required directories exist."""
    dirs = [
        Path(config.tools.output_dir),
        CONFIG_DIR / "logs",
    ]

    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)

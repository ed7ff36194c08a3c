"""
rocksbuild.ini configuration parser.

This module parses the optional per-project `rocksbuild.ini` file. Values in
the file act as defaults; environment variables read by BuildConfig take
precedence over them.

Example rocksbuild.ini:
    [rocksbuild]
    features = snappy, lz4
    jobs = 8
    git_root = ${sys:project_dir}/..

    [submodule:spdk]
    archive_url = https://github.com/spdk/spdk/archive/refs/tags/v23.01.tar.gz
    archive_sha256 = <optional hex digest>
"""

import configparser
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import ConfigError


class ProjectConfigError(ConfigError):
    """Exception raised for rocksbuild.ini configuration errors."""

    pass


class ProjectConfig:
    """
    Parser for rocksbuild.ini files.

    Usage:
        config = ProjectConfig(Path("rocksbuild.ini"))
        features = config.get_features()
        spdk = config.get_submodule_config("spdk")
    """

    SECTION = "rocksbuild"
    KNOWN_KEYS = {"features", "target", "jobs", "out_dir", "git_root", "artifact_dir", "target_features"}

    def __init__(self, ini_path: Path, project_dir: Optional[Path] = None):
        """
        Initialize the parser with a rocksbuild.ini file.

        Args:
            ini_path: Path to the rocksbuild.ini file
            project_dir: Value exposed to the file as ${sys:project_dir}

        Raises:
            ProjectConfigError: If the file doesn't exist or cannot be parsed
        """
        self.ini_path = ini_path

        if not ini_path.exists():
            raise ProjectConfigError(f"Configuration file not found: {ini_path}")

        self.config = configparser.ConfigParser(
            allow_no_value=True, interpolation=configparser.ExtendedInterpolation()
        )
        self.config["sys"] = {"project_dir": str(project_dir or ini_path.parent)}

        try:
            self.config.read(ini_path, encoding="utf-8")
        except configparser.Error as e:
            raise ProjectConfigError(f"Failed to parse {ini_path}: {e}") from e

    def get_settings(self) -> Dict[str, str]:
        """
        Get the [rocksbuild] section as a dictionary.

        Returns:
            Mapping of known keys to their (stripped) values

        Raises:
            ProjectConfigError: On unknown keys or broken interpolation
        """
        if self.SECTION not in self.config:
            return {}

        settings = {}
        try:
            for key in self.config[self.SECTION]:
                if key not in self.KNOWN_KEYS:
                    raise ProjectConfigError(
                        f"Unknown key '{key}' in [{self.SECTION}] of {self.ini_path}. "
                        + f"Known keys: {', '.join(sorted(self.KNOWN_KEYS))}"
                    )
                value = self.config[self.SECTION][key]
                settings[key] = (value or "").strip()
        except configparser.InterpolationError as e:
            raise ProjectConfigError(f"Invalid value in {self.ini_path}: {e}") from e
        return settings

    def get_features(self) -> List[str]:
        """
        Parse the enabled feature list.

        Returns:
            List of feature names

        Example:
            For features = snappy, lz4
                io-uring
            Returns: ['snappy', 'lz4', 'io-uring']
        """
        return split_list(self.get_settings().get("features", ""))

    def get_submodules(self) -> List[str]:
        """Get names of all [submodule:<name>] sections."""
        names = []
        for section in self.config.sections():
            if section.startswith("submodule:"):
                names.append(section.split(":", 1)[1])
        return names

    def get_submodule_config(self, name: str) -> Dict[str, str]:
        """
        Get configuration for one submodule.

        Args:
            name: Submodule name (e.g. 'spdk')

        Returns:
            Dictionary of key-value pairs (empty if the section is absent)
        """
        section = f"submodule:{name}"
        if section not in self.config:
            return {}
        return {key: (value or "").strip() for key, value in self.config[section].items()}


def split_list(value: str) -> List[str]:
    """Split a comma and/or newline separated list, dropping empties."""
    items = []
    for line in value.split("\n"):
        for item in line.split(","):
            item = item.strip()
            if item:
                items.append(item)
    return items

"""
Policy loader for reading and validating policy documents from disk.

This module provides the PolicyLoader class for:
- Enumerating policy files in a directory (.yaml and .yml)
- Parsing each file independently with PyYAML
- Validating each document against the Policy schema

Design Decisions:
    - A missing or unreadable directory is fatal (ConfigError)
    - A bad file is not: it raises LoadError for that file only, and
      load_directory() collects those errors instead of stopping
    - Sources are keyed by absolute path so that watcher events and the
      initial scan agree on the identifier
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from pydantic import ValidationError

from gatekeeper.errors import LoadError, PolicyDirectoryError
from gatekeeper.schema import Policy, load_yaml_document, parse_policy_document

logger = logging.getLogger(__name__)

POLICY_EXTENSIONS: tuple[str, ...] = (".yaml", ".yml")


def source_id_for(path: Path | str) -> str:
    """Stable store key for a policy file."""
    return os.path.abspath(os.fspath(path))


def is_policy_file(path: Path | str) -> bool:
    """Whether a path has a recognized policy extension."""
    return Path(path).suffix in POLICY_EXTENSIONS


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(loc) for loc in item["loc"])
        parts.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "; ".join(parts)


@dataclass
class LoadReport:
    """
    Outcome of loading a whole directory.

    Attributes:
        policies: Documents that parsed and validated
        errors: One LoadError per file that did not
    """

    policies: list[Policy] = field(default_factory=list)
    errors: list[LoadError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Whether every file loaded."""
        return not self.errors


class PolicyLoader:
    """
    Loads policy documents from a directory.

    Attributes:
        directory: Absolute path to the policy directory

    Example:
        >>> loader = PolicyLoader("policies")
        >>> report = loader.load_directory()
        >>> for error in report.errors:
        ...     print(error.message)
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(source_id_for(directory))

    def discover(self) -> list[Path]:
        """
        List policy files in the directory, sorted by name.

        Raises:
            PolicyDirectoryError: If the directory is missing or unreadable
        """
        if not self.directory.exists():
            raise PolicyDirectoryError(directory=str(self.directory))
        if not self.directory.is_dir():
            raise PolicyDirectoryError(
                directory=str(self.directory),
                message=f"Policy path is not a directory: {self.directory}",
            )

        try:
            entries = sorted(self.directory.iterdir())
        except OSError as e:
            raise PolicyDirectoryError(
                directory=str(self.directory),
                message=f"Failed to read policy directory {self.directory}: {e}",
            ) from e

        return [entry for entry in entries if entry.is_file() and is_policy_file(entry)]

    def load_file(self, path: Path | str) -> Policy:
        """
        Read, parse and validate one policy file.

        Args:
            path: Policy file (absolute or relative to the working directory)

        Returns:
            Validated Policy with source_id set to the file's absolute path

        Raises:
            LoadError: If the file cannot be read, parsed or validated
        """
        source = source_id_for(path)

        try:
            content = Path(source).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise LoadError(source=source, reason=f"failed to read file: {e}") from e

        try:
            data = load_yaml_document(content)
        except yaml.YAMLError as e:
            raise LoadError(source=source, reason=f"failed to parse YAML: {e}") from e

        try:
            return parse_policy_document(data, source_id=source)
        except ValidationError as e:
            raise LoadError(
                source=source,
                reason=f"invalid policy: {_format_validation_error(e)}",
            ) from e
        except ValueError as e:
            raise LoadError(source=source, reason=f"invalid policy: {e}") from e

    def load_directory(self) -> LoadReport:
        """
        Load every policy file in the directory.

        Raises:
            PolicyDirectoryError: If the directory itself cannot be listed
        """
        report = LoadReport()
        for path in self.discover():
            try:
                report.policies.append(self.load_file(path))
            except LoadError as e:
                logger.error("%s", e.message)
                report.errors.append(e)
        return report

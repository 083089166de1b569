"""
Storage Configuration
=====================
Turns the INGEST_STORAGE setting into validated per-kind KindConfig objects.

Every problem found here is a ConfigurationError: the subsystem refuses to
build rather than allocate into a misconfigured tree.
"""

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from ..exceptions import ConfigurationError


class NamingMode(str, enum.Enum):
    """How files inside a leaf directory are named."""
    CONTENT_ADDRESSED = 'content-addressed'
    SEQUENTIAL = 'sequential'


class DeriveMode(str, enum.Enum):
    """When derived artifacts (thumbnails) are produced."""
    INLINE = 'inline'
    DEFERRED = 'deferred'


@dataclass(frozen=True)
class KindConfig:
    """Storage configuration for one content kind."""
    kind: str
    root: Path
    depth: int
    fanout: int
    files_per_directory: int
    naming_mode: NamingMode = NamingMode.CONTENT_ADDRESSED
    extension: str = ''
    name_width: Optional[int] = None
    thumbnail_size: Optional[Tuple[int, int]] = None
    derive_mode: DeriveMode = DeriveMode.INLINE

    @property
    def is_sequential(self) -> bool:
        return self.naming_mode is NamingMode.SEQUENTIAL

    @property
    def file_width(self) -> int:
        """Digits used for sequential file names."""
        if self.name_width is not None:
            return self.name_width
        return len(str(max(self.files_per_directory - 1, 0)))

    def validate_root(self) -> None:
        """Check that the root exists and is a directory."""
        if not self.root.exists():
            raise ConfigurationError(
                f"Storage root for '{self.kind}' does not exist, "
                f"suggesting an incomplete installation: {self.root}"
            )
        if not self.root.is_dir():
            raise ConfigurationError(
                f"Storage root for '{self.kind}' is not a directory: {self.root}"
            )


def _positive_int(kind: str, options: dict, key: str, default=None) -> int:
    value = options.get(key, default)
    if value is None:
        raise ConfigurationError(f"INGEST_STORAGE['{kind}'] is missing '{key}'")
    if isinstance(value, bool):
        raise ConfigurationError(f"INGEST_STORAGE['{kind}']['{key}'] must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"INGEST_STORAGE['{kind}']['{key}'] is not decodable as a number: {value!r}"
        ) from e
    if number < 1:
        raise ConfigurationError(
            f"INGEST_STORAGE['{kind}']['{key}'] must be at least 1, got {number}"
        )
    return number


def _enum_value(enum_cls, kind: str, options: dict, key: str, default):
    raw = options.get(key, default.value)
    try:
        return enum_cls(raw)
    except ValueError as e:
        allowed = ', '.join(member.value for member in enum_cls)
        raise ConfigurationError(
            f"INGEST_STORAGE['{kind}']['{key}'] must be one of {allowed}, got {raw!r}"
        ) from e


def parse_kind_config(kind: str, options: dict) -> KindConfig:
    """
    Build a KindConfig from one INGEST_STORAGE entry.

    Args:
        kind: Content kind name (e.g. 'document')
        options: Dictionary with ROOT, DEPTH, FANOUT and optional keys

    Returns:
        KindConfig: Validated configuration

    Raises:
        ConfigurationError: If a value is missing or malformed
    """
    if not isinstance(options, dict):
        raise ConfigurationError(f"INGEST_STORAGE['{kind}'] must be a dictionary")

    root = options.get('ROOT')
    if not root:
        raise ConfigurationError(f"INGEST_STORAGE['{kind}'] is missing 'ROOT'")

    depth = _positive_int(kind, options, 'DEPTH')
    fanout = _positive_int(kind, options, 'FANOUT')
    files_per_directory = _positive_int(kind, options, 'FILES_PER_DIRECTORY', default=fanout)
    naming_mode = _enum_value(NamingMode, kind, options, 'NAMING', NamingMode.CONTENT_ADDRESSED)
    derive_mode = _enum_value(DeriveMode, kind, options, 'DERIVE', DeriveMode.INLINE)

    extension = options.get('EXTENSION', '') or ''
    if extension and not extension.startswith('.'):
        extension = f".{extension}"
    if naming_mode is NamingMode.SEQUENTIAL and not extension:
        raise ConfigurationError(
            f"INGEST_STORAGE['{kind}'] uses sequential naming and requires 'EXTENSION'"
        )

    name_width = None
    if 'NAME_WIDTH' in options:
        name_width = _positive_int(kind, options, 'NAME_WIDTH')
        if name_width < len(str(files_per_directory - 1)):
            raise ConfigurationError(
                f"INGEST_STORAGE['{kind}']['NAME_WIDTH'] is too narrow for "
                f"{files_per_directory} files per directory"
            )

    thumbnail_size = options.get('THUMBNAIL_SIZE')
    if thumbnail_size is not None:
        try:
            width, height = (int(v) for v in thumbnail_size)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"INGEST_STORAGE['{kind}']['THUMBNAIL_SIZE'] must be a (width, height) pair"
            ) from e
        if width < 1 or height < 1:
            raise ConfigurationError(
                f"INGEST_STORAGE['{kind}']['THUMBNAIL_SIZE'] must be positive"
            )
        if naming_mode is not NamingMode.SEQUENTIAL:
            raise ConfigurationError(
                f"INGEST_STORAGE['{kind}'] derives thumbnails, which needs sequential naming"
            )
        thumbnail_size = (width, height)

    return KindConfig(
        kind=kind,
        root=Path(root),
        depth=depth,
        fanout=fanout,
        files_per_directory=files_per_directory,
        naming_mode=naming_mode,
        extension=extension,
        name_width=name_width,
        thumbnail_size=thumbnail_size,
        derive_mode=derive_mode,
    )


def load_kind_configs(storage_settings) -> Dict[str, KindConfig]:
    """Parse the whole INGEST_STORAGE setting."""
    if not storage_settings or not isinstance(storage_settings, dict):
        raise ConfigurationError("INGEST_STORAGE must be a non-empty dictionary")
    return {
        kind: parse_kind_config(kind, options)
        for kind, options in storage_settings.items()
    }

#!/usr/bin/env python3
"""macpackager - assemble macOS .app bundles from a prebuilt app runtime.

This module turns a staged application runtime (an ``Electron.app``-style
bundle) plus a packaging configuration into a conformant macOS bundle:

1. Stage the runtime into the output directory and rename it
2. Write the main Info.plist
3. Expand the helper process bundles (Helper, Helper EH, Helper NP)
4. Place the application icon
5. Optionally codesign the result

Usage (CLI):
    # Package a runtime for one architecture
    macpackager package ./electron-runtime --name MyApp --app-version 1.2.0

    # Sign an existing bundle
    macpackager sign MyApp-darwin-x64/MyApp.app

Usage (API):
    from macpackager import PackagingConfig, assemble

    config = PackagingConfig(app_name="MyApp", app_version="1.2.0",
                             runtime="./electron-runtime")
    paths = assemble(config)
"""

import argparse
import dataclasses
import datetime
import enum
import logging
import os
import plistlib
import re
import shutil
import subprocess
import sys
from collections.abc import Callable, Mapping
from pathlib import Path

from dotenv import load_dotenv

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str
Version = str | int

# Default bundle identifier prefix, completed with the lowercased app name
DEFAULT_BUNDLE_ID_PREFIX = "com.electron."

# Default name of the prebuilt runtime bundle (<name>.app)
DEFAULT_RUNTIME_NAME = "Electron"

DEFAULT_ARCH = "x64"
DEFAULT_PLATFORM = "darwin"
SUPPORTED_PLATFORMS = ("darwin", "mas")

BUNDLE_EXT = ".app"
ICON_EXT = ".icns"

# Canonical icon file name inside Contents/Resources
ICON_FILENAME = "atom.icns"

# Characters allowed in CFBundleIdentifier
BUNDLE_ID_DISALLOWED = re.compile(r"[^A-Za-z0-9.\-]")

# Environment variable names
ENV_DEV_ID = "DEV_ID"

# Configuration files searched in the working directory
CONFIG_FILENAMES = (".macpackager.toml", "macpackager.toml")
CONFIG_SECTION = "package"

# Signing authority prefix per target platform
SIGNING_AUTHORITY_PREFIX = {
    "darwin": "Developer ID Application",
    "mas": "3rd Party Mac Developer Application",
}

# File extensions for code signing
SIGNABLE_FILE_EXTENSIONS = [".so", ".dylib", ".node"]
SIGNABLE_FOLDER_EXTENSIONS = [".framework", ".app", ".bundle"]

# Exit status reported by shells when a command cannot be found
EXIT_COMMAND_NOT_FOUND = 127

load_dotenv()

log = logging.getLogger("macpackager")

# ----------------------------------------------------------------------------
# Error handling


class PackagerError(Exception):
    """Base exception class for macpackager errors."""


class ConfigurationError(PackagerError):
    """Exception raised when configuration is invalid."""


class ValidationError(PackagerError):
    """Exception raised when validation fails."""


class ResourceNotFoundError(PackagerError):
    """Exception raised when a resource file cannot be found."""

    def __init__(self, path: Pathlike, what: str = "Resource"):
        self.path = Path(path)
        super().__init__(f"{what} not found: {self.path}")


class BundleStructureError(PackagerError):
    """Exception raised when a staged bundle lacks an expected part."""


class CommandError(PackagerError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        message = f"Command '{command}' failed with return code {returncode}"
        if output:
            message = f"{message}: {output.strip()}"
        super().__init__(message)


class ToolMissingError(PackagerError):
    """Exception raised when an external tool is not installed."""

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"{tool} is not installed")


class CodesignError(PackagerError):
    """Exception raised when codesigning fails."""


class AssemblyError(PackagerError):
    """Exception raised when a stage of bundle assembly fails.

    The original error is available as ``__cause__``.
    """

    def __init__(self, stage: str, bundle_path: Pathlike, error: Exception):
        self.stage = stage
        self.bundle_path = Path(bundle_path)
        self.error = error
        super().__init__(
            f"{stage} failed for {self.bundle_path}: {error}"
        )


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        if not self.use_color:
            log_fmt = self.fmt
        else:
            log_fmt = self.FORMATS[record.levelno]
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
    )


# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Pathlike | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .macpackager.toml in current directory
    3. macpackager.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If the file exists but is not valid TOML

    Example .macpackager.toml:
        [package]
        app_name = "MyApp"
        app_version = "1.2.0"
        app_bundle_id = "com.example.myapp"
        icon = "assets/icon"
        sign = true
    """
    try:
        import tomllib
    except ImportError:
        import tomli as tomllib  # type: ignore[no-redef]

    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [cwd / name for name in CONFIG_FILENAMES]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(
                    f"Invalid config file {path}: {e}"
                ) from e
            log.debug("loaded config: %s", path)
            return data

    return {}


def get_config_section(
    config: Mapping[str, object], section: str = CONFIG_SECTION
) -> dict[str, object]:
    """Get a section table from a loaded config.

    Args:
        config: Configuration dictionary
        section: Section name

    Returns:
        The section as a dictionary (empty if missing)
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        raise ConfigurationError(f"[{section}] must be a table")
    return dict(section_config)


# ----------------------------------------------------------------------------
# Packaging configuration


def normalize_version(value: object, field: str = "version") -> str | None:
    """Coerce a string-or-integer version to its string form.

    Args:
        value: The configured version (str, int or None)
        field: Field name used in error messages

    Returns:
        The version as a string, or None if unset

    Raises:
        ConfigurationError: If the value is neither a string nor an integer
    """
    if value is None:
        return None
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ConfigurationError(
            f"{field} must be a string or an integer, got {value!r}"
        )
    return str(value)


class HelperVariant(enum.Enum):
    """Helper process bundles shipped next to the main app."""

    BASE = ("", "")
    EH = (" EH", ".EH")
    NP = (" NP", ".NP")

    def __init__(self, name_suffix: str, id_suffix: str):
        self.name_suffix = name_suffix
        self.id_suffix = id_suffix

    def helper_name(self, app_name: str) -> str:
        """Return the executable/display name of this helper."""
        return f"{app_name} Helper{self.name_suffix}"


@dataclasses.dataclass(frozen=True)
class PackagingConfig:
    """Immutable packaging options consumed by the assembly pipeline.

    Versions are normalized to strings at construction and ``build_version``
    falls back to ``app_version``. Use :meth:`from_mapping` to merge a base
    mapping (e.g. a config file section) with per-call overrides.
    """

    app_name: str
    app_version: Version | None = None
    build_version: Version | None = None
    app_category_type: str | None = None
    app_bundle_id: str | None = None
    helper_bundle_id: str | None = None
    icon: Pathlike | None = None
    sign: bool = False
    sign_identity: str | None = None
    entitlements: Pathlike | None = None
    out: Pathlike = "."
    runtime: Pathlike | None = None
    runtime_name: str = DEFAULT_RUNTIME_NAME
    app_dir: Pathlike | None = None
    arch: tuple[str, ...] = (DEFAULT_ARCH,)
    platform: str = DEFAULT_PLATFORM
    app_copyright: str | None = None
    protocols: tuple[tuple[str, tuple[str, ...]], ...] = ()
    extend_info: Pathlike | Mapping[str, object] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.app_name, str) or not self.app_name.strip():
            raise ConfigurationError("app_name must be a non-empty string")
        if "/" in self.app_name or self.app_name in (".", ".."):
            raise ConfigurationError(
                f"app_name cannot be used as a file name: {self.app_name!r}"
            )

        app_version = normalize_version(self.app_version, "app_version")
        build_version = normalize_version(self.build_version, "build_version")
        object.__setattr__(self, "app_version", app_version)
        object.__setattr__(self, "build_version", build_version or app_version)

        if self.platform not in SUPPORTED_PLATFORMS:
            raise ConfigurationError(
                f"platform must be one of {SUPPORTED_PLATFORMS}, "
                f"got {self.platform!r}"
            )

        arch = (self.arch,) if isinstance(self.arch, str) else tuple(self.arch)
        if not arch or not all(isinstance(a, str) and a for a in arch):
            raise ConfigurationError("arch must name at least one target")
        object.__setattr__(self, "arch", arch)

        object.__setattr__(self, "out", Path(self.out))
        for field in ("icon", "entitlements", "runtime", "app_dir"):
            value = getattr(self, field)
            if value is not None and value != "":
                object.__setattr__(self, field, Path(value))
            else:
                object.__setattr__(self, field, None)

        if self.entitlements is not None and not self.entitlements.exists():
            raise ConfigurationError(
                f"Entitlements file not found: {self.entitlements}"
            )
        if not isinstance(self.sign, bool):
            raise ConfigurationError(
                f"sign must be true or false, got {self.sign!r}"
            )
        if self.sign_identity is None:
            object.__setattr__(self, "sign_identity", os.getenv(ENV_DEV_ID))

        object.__setattr__(
            self, "protocols", _normalize_protocols(self.protocols)
        )
        if isinstance(self.extend_info, Mapping):
            object.__setattr__(self, "extend_info", dict(self.extend_info))
        elif self.extend_info is not None:
            object.__setattr__(self, "extend_info", Path(self.extend_info))

    @classmethod
    def from_mapping(
        cls, base: Mapping[str, object] | None = None, **overrides: object
    ) -> "PackagingConfig":
        """Build a config from a base mapping plus overrides.

        Keys may be given in kebab-case (``app-bundle-id``) or snake_case.
        Overrides whose value is None leave the base value in place.

        Args:
            base: Base options, e.g. the [package] table of a config file
            **overrides: Per-call options taking precedence over base

        Returns:
            The merged, validated configuration

        Raises:
            ConfigurationError: On unknown keys or invalid values
        """
        known = {f.name for f in dataclasses.fields(cls)}
        merged: dict[str, object] = {}
        for source in (base or {}, overrides):
            for key, value in source.items():
                name = key.replace("-", "_")
                if name == "name":
                    name = "app_name"
                if name not in known:
                    raise ConfigurationError(f"Unknown option: {key}")
                if value is not None:
                    merged[name] = value
        if "app_name" not in merged:
            raise ConfigurationError("app_name is required")
        try:
            return cls(**merged)  # type: ignore[arg-type]
        except TypeError as e:
            raise ConfigurationError(str(e)) from e

    @property
    def resolved_app_bundle_id(self) -> str:
        """The sanitized main bundle identifier."""
        return filter_bundle_identifier(
            self.app_bundle_id
            or DEFAULT_BUNDLE_ID_PREFIX + self.app_name.lower()
        )

    def output_root(self, arch: str) -> Path:
        """Output directory for one target architecture."""
        return self.out / f"{self.app_name}-{self.platform}-{arch}"

    def bundle_path(self, arch: str) -> Path:
        """Path of the main .app bundle for one target architecture."""
        return self.output_root(arch) / f"{self.app_name}{BUNDLE_EXT}"


def _normalize_protocols(
    protocols: object,
) -> tuple[tuple[str, tuple[str, ...]], ...]:
    """Normalize URL protocol declarations to (name, schemes) pairs.

    Accepts pairs, or mappings with ``name`` and ``schemes`` keys as found
    in a TOML array of tables.
    """
    result = []
    for entry in protocols or ():  # type: ignore[union-attr]
        if isinstance(entry, Mapping):
            name, schemes = entry.get("name"), entry.get("schemes")
        else:
            try:
                name, schemes = entry
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid protocol declaration: {entry!r}"
                ) from e
        if isinstance(schemes, str):
            schemes = (schemes,)
        if not isinstance(name, str) or not name or not schemes:
            raise ConfigurationError(
                f"Protocol needs a name and at least one scheme: {entry!r}"
            )
        result.append((name, tuple(str(s) for s in schemes)))
    return tuple(result)


# ----------------------------------------------------------------------------
# Bundle identifiers and icons


def filter_bundle_identifier(raw: str) -> str:
    """Remove every character not allowed in a CFBundleIdentifier.

    Only ASCII letters, digits, hyphen and period are kept. Disallowed
    characters are deleted rather than replaced.

    Args:
        raw: Arbitrary string (display name, configured identifier, ...)

    Returns:
        The filtered identifier, possibly empty
    """
    return BUNDLE_ID_DISALLOWED.sub("", raw)


def resolve_icon(path: Pathlike | None) -> Path | None:
    """Resolve a configured icon to the .icns file to bundle.

    A path with another extension (``icon.ico``, ``icon.png``) or none at
    all (``icon``) resolves to the .icns file next to it.

    Args:
        path: Configured icon path, or None

    Returns:
        Path to an existing .icns file, or None if no icon is configured

    Raises:
        ResourceNotFoundError: If no .icns file exists at the resolved path
    """
    if path is None or str(path) == "":
        return None
    icon = Path(path)
    if icon.suffix.lower() != ICON_EXT:
        icon = icon.with_suffix(ICON_EXT)
    if not icon.is_file():
        raise ResourceNotFoundError(icon, "Icon")
    return icon


# ----------------------------------------------------------------------------
# Info.plist synthesis


def synthesize_main_plist(config: PackagingConfig) -> dict[str, object]:
    """Build the Info.plist entries of the main app bundle.

    Args:
        config: Packaging configuration

    Returns:
        Mapping of Info.plist keys to values
    """
    document: dict[str, object] = {}
    extend_info = config.extend_info
    if isinstance(extend_info, Path):
        extend_info = read_plist(extend_info, required=True)
    if extend_info:
        document.update(extend_info)

    document.update(
        {
            "CFBundleDisplayName": config.app_name,
            "CFBundleName": config.app_name,
            "CFBundleExecutable": config.app_name,
            "CFBundleIdentifier": config.resolved_app_bundle_id,
        }
    )
    if config.app_version is not None:
        document["CFBundleShortVersionString"] = config.app_version
        document["CFBundleVersion"] = config.build_version
    if config.app_category_type:
        document["LSApplicationCategoryType"] = config.app_category_type
    if config.app_copyright:
        document["NSHumanReadableCopyright"] = config.app_copyright
    if config.icon is not None:
        document["CFBundleIconFile"] = ICON_FILENAME
    if config.protocols:
        document["CFBundleURLTypes"] = [
            {"CFBundleURLName": name, "CFBundleURLSchemes": list(schemes)}
            for name, schemes in config.protocols
        ]
    return document


def synthesize_helper_plist(
    config: PackagingConfig,
    variant: HelperVariant,
    app_bundle_id: str | None = None,
) -> dict[str, object]:
    """Build the Info.plist entries of one helper bundle.

    Args:
        config: Packaging configuration
        variant: Which helper bundle
        app_bundle_id: Resolved main identifier (computed if omitted)

    Returns:
        Mapping of Info.plist keys to values
    """
    if app_bundle_id is None:
        app_bundle_id = config.resolved_app_bundle_id
    base_id = filter_bundle_identifier(
        config.helper_bundle_id or f"{app_bundle_id}.helper"
    )
    name = variant.helper_name(config.app_name)
    document: dict[str, object] = {
        "CFBundleName": name,
        "CFBundleExecutable": name,
        "CFBundleIdentifier": base_id + variant.id_suffix,
    }
    if variant is not HelperVariant.BASE:
        document["CFBundleDisplayName"] = name
    return document


def read_plist(path: Pathlike, required: bool = False) -> dict[str, object]:
    """Read a property list file into a dictionary.

    Args:
        path: Path to the plist
        required: If False, a missing, empty or unreadable file yields {}

    Returns:
        The top-level dictionary

    Raises:
        ResourceNotFoundError: If required and the file does not exist
        ConfigurationError: If required and the file is not a plist dict
    """
    path = Path(path)
    if not path.is_file():
        if required:
            raise ResourceNotFoundError(path, "Property list")
        return {}
    try:
        with open(path, "rb") as f:
            data = plistlib.load(f)
    except (plistlib.InvalidFileException, ValueError) as e:
        if required:
            raise ConfigurationError(f"Invalid property list {path}: {e}") from e
        log.debug("ignoring unreadable plist %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        if required:
            raise ConfigurationError(f"Property list is not a dict: {path}")
        return {}
    return data


def write_info_plist(
    path: Pathlike,
    document: Mapping[str, object],
    drop: tuple[str, ...] = (),
) -> None:
    """Merge entries into an Info.plist and write it as XML.

    Keys already present in the file (e.g. those of a placeholder shipped
    with the runtime) are kept unless overridden or listed in ``drop``.

    Args:
        path: Path to the Info.plist
        document: Entries to set
        drop: Keys to remove

    Raises:
        ConfigurationError: If a value cannot be stored in a property list
    """
    path = Path(path)
    data = read_plist(path)
    data.update(document)
    for key in drop:
        data.pop(key, None)
    # serialize before opening so a bad value leaves the file untouched
    try:
        content = plistlib.dumps(data, fmt=plistlib.FMT_XML, sort_keys=True)
    except (TypeError, OverflowError) as e:
        raise ConfigurationError(
            f"Cannot write property list {path}: {e}"
        ) from e
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(content)


# ----------------------------------------------------------------------------
# Helper bundles


def helper_bundle_path(
    frameworks: Path, app_name: str, variant: HelperVariant
) -> Path:
    """Path of a helper bundle inside Contents/Frameworks."""
    return frameworks / f"{variant.helper_name(app_name)}{BUNDLE_EXT}"


def expand_helpers(
    app_path: Pathlike,
    config: PackagingConfig,
    app_bundle_id: str | None = None,
) -> list[Path]:
    """Derive the EH and NP helper bundles from the staged base helper.

    Each variant is a fresh copy of ``<name> Helper.app`` with its
    executable renamed and its Info.plist rewritten. Existing variant
    bundles are replaced, so the operation can be repeated.

    Args:
        app_path: Path to the staged main .app bundle
        config: Packaging configuration
        app_bundle_id: Resolved main identifier (computed if omitted)

    Returns:
        Paths of the helper bundles in HelperVariant order

    Raises:
        BundleStructureError: If the base helper or its executable is missing
    """
    app_path = Path(app_path)
    frameworks = app_path / "Contents" / "Frameworks"
    base_name = HelperVariant.BASE.helper_name(config.app_name)
    base_helper = helper_bundle_path(
        frameworks, config.app_name, HelperVariant.BASE
    )
    base_exe = base_helper / "Contents" / "MacOS" / base_name

    if not base_helper.is_dir():
        raise BundleStructureError(f"Helper bundle is missing: {base_helper}")
    if not base_exe.is_file():
        raise BundleStructureError(f"Helper executable is missing: {base_exe}")

    helpers = []
    for variant in HelperVariant:
        helper = helper_bundle_path(frameworks, config.app_name, variant)
        if variant is not HelperVariant.BASE:
            if helper.exists() or helper.is_symlink():
                shutil.rmtree(helper)
            shutil.copytree(base_helper, helper, symlinks=True)
            macos = helper / "Contents" / "MacOS"
            (macos / base_name).rename(
                macos / variant.helper_name(config.app_name)
            )
            log.debug("created helper: %s", helper.name)
        write_info_plist(
            helper / "Contents" / "Info.plist",
            synthesize_helper_plist(config, variant, app_bundle_id),
        )
        helpers.append(helper)
    return helpers


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str],
    log: logging.Logger | None = None,
) -> str:
    """Run a command and return its output.

    Uses shell=False. A missing executable is reported as ToolMissingError
    so that callers can tell it apart from a failing one.

    Args:
        command: The command as a list of arguments
        log: Optional logger for debug output

    Returns:
        The command stdout output

    Raises:
        ToolMissingError: If the command is not installed
        CommandError: If the command fails
    """
    cmd_str = " ".join(command)
    if log:
        log.debug("%s", cmd_str)
    try:
        result = subprocess.run(
            command, shell=False, check=True, text=True, capture_output=True
        )
        return result.stdout
    except FileNotFoundError as e:
        raise ToolMissingError(command[0]) from e
    except subprocess.CalledProcessError as e:
        if e.returncode == EXIT_COMMAND_NOT_FOUND:
            raise ToolMissingError(command[0]) from e
        output = "\n".join(s for s in (e.stderr, e.stdout) if s)
        raise CommandError(cmd_str, e.returncode, output or None) from e


# ----------------------------------------------------------------------------
# Codesigning

# Developer ID format: "Name" or "Name (TEAM_ID)" where TEAM_ID is 10 alphanumeric chars
DEVELOPER_ID_PATTERN = re.compile(
    r"^[A-Za-z][A-Za-z0-9\s\.\-\,\']+(?:\s+\([A-Z0-9]{10}\))?$"
)


def validate_developer_id(dev_id: str) -> None:
    """Validate Developer ID string format.

    Developer ID should be in one of these formats:
    - "John Doe" (name only)
    - "John Doe (ABCD123456)" (name with 10-character Team ID)

    Args:
        dev_id: The Developer ID name to validate

    Raises:
        ValidationError: If the Developer ID format is invalid
    """
    if not dev_id or not dev_id.strip():
        raise ValidationError("Developer ID cannot be empty")

    dev_id = dev_id.strip()
    if len(dev_id) < 2:
        raise ValidationError(f"Developer ID is too short: '{dev_id}'")
    if len(dev_id) > 100:
        raise ValidationError(
            f"Developer ID is too long (max 100 characters): '{dev_id}'"
        )
    if not DEVELOPER_ID_PATTERN.match(dev_id):
        raise ValidationError(
            f"Developer ID has invalid format: '{dev_id}'. "
            "Expected format: 'Name' or 'Name (TEAM_ID)' where TEAM_ID is 10 alphanumeric characters"
        )


class Codesigner:
    """Recursively codesign an app bundle and its helpers.

    Signing proceeds inside-out:
    1. Sign loose binaries (.so, .dylib, .node)
    2. Sign nested .app bundles (helpers), their executables first
    3. Sign frameworks
    4. Sign the main bundle with the hardened runtime

    Args:
        path: Path to the bundle to sign
        identity: Developer ID name, a full signing authority, or None/"-"
            for ad-hoc signing
        entitlements: Path to entitlements.plist file
        platform: "darwin" or "mas", selects the authority prefix
        verify: If True, verify the signature after signing

    Example:
        signer = Codesigner("MyApp.app", identity="John Doe")
        signer.process()
    """

    FILE_EXTENSIONS: list[str] = SIGNABLE_FILE_EXTENSIONS
    FOLDER_EXTENSIONS: list[str] = SIGNABLE_FOLDER_EXTENSIONS

    def __init__(
        self,
        path: Pathlike,
        identity: str | None = None,
        entitlements: Pathlike | None = None,
        platform: str = DEFAULT_PLATFORM,
        verify: bool = True,
    ) -> None:
        self.path = Path(path)
        self.verify_after = verify
        self.log = logging.getLogger(self.__class__.__name__)

        self.authority: str | None
        if identity is not None and identity not in ("-", ""):
            if ":" in identity:
                self.authority = identity
            else:
                validate_developer_id(identity)
                prefix = SIGNING_AUTHORITY_PREFIX.get(
                    platform, SIGNING_AUTHORITY_PREFIX[DEFAULT_PLATFORM]
                )
                self.authority = f"{prefix}: {identity}"
        else:
            self.authority = None  # ad-hoc signing

        self.entitlements: Path | None
        if entitlements:
            self.entitlements = Path(entitlements)
            if not self.entitlements.exists():
                raise ConfigurationError(
                    f"Entitlements file not found: {self.entitlements}"
                )
        else:
            self.entitlements = None

        # Target collections
        self.targets_internals: set[Path] = set()
        self.targets_apps: set[Path] = set()
        self.targets_frameworks: set[Path] = set()

        self._cmd_codesign_base = [
            "codesign",
            "--sign",
            self.authority if self.authority else "-",
            "--force",
        ]
        if self.authority:
            self._cmd_codesign_base.append("--timestamp")

    def run_command(self, command: list[str]) -> str:
        """Run a command and return its output."""
        return run_command(command, log=self.log)

    def collect(self) -> None:
        """Walk the bundle and categorize all signable targets."""
        for root, folders, files in os.walk(self.path):
            root_path = Path(root)

            for fname in files:
                fpath = root_path / fname
                if fpath.is_symlink():
                    continue
                if fpath.suffix in self.FILE_EXTENSIONS:
                    self.log.debug("added binary: %s", fpath)
                    self.targets_internals.add(fpath)

            for folder in folders:
                fpath = root_path / folder
                if fpath.is_symlink():
                    continue
                if fpath.suffix in self.FOLDER_EXTENSIONS:
                    self.log.debug("added bundle: %s", fpath)
                    if fpath.suffix == ".framework":
                        self.targets_frameworks.add(fpath)
                    elif fpath.suffix == ".app":
                        self.targets_apps.add(fpath)
                    else:
                        self.targets_internals.add(fpath)

    def sign_internal_binary(self, path: Path) -> None:
        """Sign a nested binary without runtime hardening."""
        self.log.info("signing internal: %s", path)
        self.run_command(self._cmd_codesign_base + [str(path)])

    def sign_runtime(self, path: Path | None = None) -> None:
        """Sign with runtime hardening and optional entitlements.

        Args:
            path: Path to sign (defaults to main bundle path)
        """
        if path is None:
            path = self.path

        cmd_parts = self._cmd_codesign_base + ["--options", "runtime"]
        if self.entitlements:
            cmd_parts.extend(["--entitlements", str(self.entitlements)])
        cmd_parts.append(str(path))

        self.log.info("signing runtime: %s", path)
        self.run_command(cmd_parts)

    def verify_signature(self, path: Path) -> bool:
        """Verify codesigning of a path.

        Args:
            path: Path to verify

        Returns:
            True if verification succeeds
        """
        try:
            self.run_command(
                ["codesign", "--verify", "--deep", "--strict", str(path)]
            )
        except CommandError as e:
            self.log.error("verification failed for %s: %s", path, e)
            return False
        self.log.info("verified: %s", path)
        return True

    def process(self) -> None:
        """Execute the full signing workflow.

        Raises:
            ToolMissingError: If codesign is not installed
            CommandError: If a codesign invocation fails
            CodesignError: If the final verification fails
        """
        self.log.info("signing %s (%s)", self.path, self.authority or "ad-hoc")
        if not self.targets_internals and not self.targets_apps:
            self.collect()

        for path in sorted(self.targets_internals):
            self.sign_internal_binary(path)

        # deepest bundles first
        for path in sorted(
            self.targets_apps, key=lambda p: len(p.parts), reverse=True
        ):
            macos_path = path / "Contents" / "MacOS"
            if macos_path.exists():
                for exe in sorted(macos_path.iterdir()):
                    if exe.is_file() and not exe.is_symlink():
                        self.sign_internal_binary(exe)
            self.sign_runtime(path)

        for path in sorted(self.targets_frameworks):
            self.sign_internal_binary(path)

        self.sign_runtime()

        if self.verify_after and not self.verify_signature(self.path):
            raise CodesignError(f"Signature verification failed: {self.path}")


def sign_bundle(
    bundle_path: Pathlike,
    identity: str | None = None,
    entitlements: Pathlike | None = None,
    platform: str = DEFAULT_PLATFORM,
) -> bool:
    """Codesign a bundle, skipping when codesign is not installed.

    Args:
        bundle_path: Path to the .app bundle
        identity: Signing identity (None for ad-hoc)
        entitlements: Optional entitlements.plist
        platform: "darwin" or "mas"

    Returns:
        True if the bundle was signed, False if signing was skipped

    Raises:
        CommandError: If codesign fails
        CodesignError: If the signature does not verify
    """
    signer = Codesigner(
        bundle_path,
        identity=identity,
        entitlements=entitlements,
        platform=platform,
    )
    try:
        signer.process()
    except ToolMissingError as e:
        signer.log.warning("%s; skipped signing %s", e, bundle_path)
        return False
    return True


# ----------------------------------------------------------------------------
# Bundle assembly


class Assembler:
    """Assembles one .app bundle per configured target architecture.

    Each target runs a fixed sequence of stages; the first failing stage
    aborts that target with an AssemblyError naming the stage and bundle.
    Output left by earlier stages is not rolled back, and running the
    assembly again over the same output directory rebuilds it.

    Args:
        config: Packaging configuration

    Example:
        paths = Assembler(PackagingConfig(app_name="MyApp")).assemble()
    """

    def __init__(self, config: PackagingConfig):
        self.config = config
        self.log = logging.getLogger(self.__class__.__name__)
        self.app_bundle_id = config.resolved_app_bundle_id
        self.skipped: list[tuple[Path, str]] = []

    @property
    def stages(self) -> list[tuple[str, Callable[[str, Path], None]]]:
        """Ordered (name, function) pairs run for every target."""
        stages = [
            ("stage", self.stage),
            ("write_plist", self.write_plist),
            ("expand_helpers", self.expand_helpers),
            ("place_icon", self.place_icon),
        ]
        if self.config.sign:
            stages.append(("sign", self.sign))
        return stages

    def stage(self, arch: str, bundle: Path) -> None:
        """Copy the runtime into place, or validate an already staged bundle."""
        if self.config.runtime is not None:
            stage_runtime(self.config, arch)
        contents = bundle / "Contents"
        executable = contents / "MacOS" / self.config.app_name
        if not bundle.is_dir():
            raise BundleStructureError(f"Bundle is missing: {bundle}")
        if not executable.is_file():
            raise BundleStructureError(
                f"Main executable is missing: {executable}"
            )
        if self.config.runtime is None:
            copy_app_dir(self.config, bundle)

    def write_plist(self, arch: str, bundle: Path) -> None:
        """Write the main Info.plist."""
        drop = ()
        if not self.config.app_category_type:
            drop += ("LSApplicationCategoryType",)
        write_info_plist(
            bundle / "Contents" / "Info.plist",
            synthesize_main_plist(self.config),
            drop=drop,
        )

    def expand_helpers(self, arch: str, bundle: Path) -> None:
        """Create and describe the helper bundles."""
        expand_helpers(bundle, self.config, self.app_bundle_id)

    def place_icon(self, arch: str, bundle: Path) -> None:
        """Copy the resolved icon into Contents/Resources."""
        icon = resolve_icon(self.config.icon)
        if icon is None:
            return
        resources = bundle / "Contents" / "Resources"
        resources.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(icon, resources / ICON_FILENAME)
        self.log.info("Added icon: %s", icon)

    def sign(self, arch: str, bundle: Path) -> None:
        """Codesign the finished bundle."""
        signed = sign_bundle(
            bundle,
            identity=self.config.sign_identity,
            entitlements=self.config.entitlements,
            platform=self.config.platform,
        )
        if not signed:
            self.skipped.append((bundle, "sign"))

    def assemble_target(self, arch: str) -> Path:
        """Run every stage for one architecture.

        Returns:
            The output root directory for this target

        Raises:
            AssemblyError: If any stage fails
        """
        bundle = self.config.bundle_path(arch)
        self.log.info("Assembling %s", bundle)
        for name, func in self.stages:
            self.log.debug("stage %s: %s", name, bundle)
            try:
                func(arch, bundle)
            except (PackagerError, OSError) as e:
                raise AssemblyError(name, bundle, e) from e
        self.log.info("Bundle created successfully: %s", bundle)
        return self.config.output_root(arch)

    def assemble(self) -> list[Path]:
        """Assemble every configured target in order.

        Returns:
            One output root per target, in configuration order
        """
        return [self.assemble_target(arch) for arch in self.config.arch]


def stage_runtime(config: PackagingConfig, arch: str) -> Path:
    """Copy the prebuilt runtime bundle to the target output location.

    The output root is replaced. The runtime's main executable and base
    helper are renamed after the app; its variant helpers are dropped since
    they are regenerated from the base helper.

    Args:
        config: Packaging configuration (``runtime`` must be set)
        arch: Target architecture, substituted for ``{arch}`` in the runtime path

    Returns:
        Path to the staged .app bundle

    Raises:
        ResourceNotFoundError: If the runtime bundle does not exist
        BundleStructureError: If the runtime lacks its executables
    """
    if config.runtime is None:
        raise ConfigurationError("No runtime configured to stage from")
    runtime_name = config.runtime_name
    source = Path(str(config.runtime).replace("{arch}", arch))
    source_app = source / f"{runtime_name}{BUNDLE_EXT}"
    if not source_app.is_dir():
        raise ResourceNotFoundError(source_app, "Runtime bundle")

    root = config.output_root(arch)
    bundle = config.bundle_path(arch)
    if root.exists():
        log.info("Overwriting %s", root)
        shutil.rmtree(root)
    root.mkdir(parents=True)
    shutil.copytree(source_app, bundle, symlinks=True)

    contents = bundle / "Contents"
    _rename_executable(contents / "MacOS", runtime_name, config.app_name)

    frameworks = contents / "Frameworks"
    runtime_helper = f"{runtime_name} Helper"
    helper_name = HelperVariant.BASE.helper_name(config.app_name)
    for variant in HelperVariant:
        if variant is HelperVariant.BASE:
            continue
        stale = frameworks / f"{runtime_helper}{variant.name_suffix}{BUNDLE_EXT}"
        if stale.exists():
            shutil.rmtree(stale)
    helper = frameworks / f"{runtime_helper}{BUNDLE_EXT}"
    if helper.is_dir() and runtime_helper != helper_name:
        target = frameworks / f"{helper_name}{BUNDLE_EXT}"
        helper.rename(target)
        _rename_executable(
            target / "Contents" / "MacOS", runtime_helper, helper_name
        )

    copy_app_dir(config, bundle)
    log.debug("staged runtime %s -> %s", source_app, bundle)
    return bundle


def copy_app_dir(config: PackagingConfig, bundle: Path) -> None:
    """Copy the configured application directory to Contents/Resources/app.

    An existing copy is replaced. Nothing happens when no app_dir is set.
    """
    if config.app_dir is None:
        return
    if not config.app_dir.is_dir():
        raise ResourceNotFoundError(config.app_dir, "Application directory")
    target = bundle / "Contents" / "Resources" / "app"
    if target.is_symlink() or target.is_file():
        target.unlink()
    elif target.exists():
        shutil.rmtree(target)
    shutil.copytree(config.app_dir, target, symlinks=True)


def _rename_executable(macos: Path, old: str, new: str) -> None:
    source = macos / old
    if not source.is_file():
        raise BundleStructureError(f"Runtime executable is missing: {source}")
    if old != new:
        source.rename(macos / new)


def assemble(config: PackagingConfig) -> list[Path]:
    """Assemble the app bundles described by a configuration.

    This is a convenience function that creates an Assembler instance
    and calls assemble() on it.

    Args:
        config: Packaging configuration

    Returns:
        Output root paths, one per target architecture

    Raises:
        AssemblyError: If any stage of any target fails
    """
    return Assembler(config).assemble()


# ----------------------------------------------------------------------------
# Command-line interface


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )


def _parse_protocol(value: str) -> tuple[str, tuple[str, ...]]:
    name, sep, schemes = value.partition(":")
    if not sep or not name or not schemes:
        raise argparse.ArgumentTypeError(
            f"expected NAME:SCHEME[,SCHEME...], got {value!r}"
        )
    return name, tuple(s for s in schemes.split(",") if s)


def _cmd_package(args: argparse.Namespace) -> None:
    """Handle 'package' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macpackager")

    base = get_config_section(load_config(args.config))
    config = PackagingConfig.from_mapping(
        base,
        app_name=args.name,
        app_version=args.app_version,
        build_version=args.build_version,
        app_category_type=args.app_category_type,
        app_bundle_id=args.app_bundle_id,
        helper_bundle_id=args.helper_bundle_id,
        icon=args.icon,
        sign=args.sign,
        sign_identity=args.identity,
        entitlements=args.entitlements,
        out=args.out,
        runtime=args.runtime,
        runtime_name=args.runtime_name,
        app_dir=args.app_dir,
        arch=tuple(args.arch) if args.arch else None,
        platform=args.platform,
        app_copyright=args.app_copyright,
        protocols=tuple(args.protocol) if args.protocol else None,
        extend_info=args.extend_info,
    )

    assembler = Assembler(config)
    for path in assembler.assemble():
        log.info("Created: %s", path)
    for bundle, stage in assembler.skipped:
        log.warning("Skipped %s: %s", stage, bundle)


def _cmd_sign(args: argparse.Namespace) -> None:
    """Handle 'sign' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macpackager")

    bundle = Path(args.bundle)
    if not bundle.exists():
        log.error("Bundle does not exist: %s", bundle)
        sys.exit(1)

    identity = args.identity if args.identity is not None else os.getenv(ENV_DEV_ID)
    if sign_bundle(
        bundle,
        identity=identity,
        entitlements=args.entitlements,
        platform=args.platform,
    ):
        log.info("Signed: %s", bundle)


def main(argv: list[str] | None = None) -> None:
    """Command line interface for macpackager."""
    try:
        parser = argparse.ArgumentParser(
            prog="macpackager",
            description="Package an app runtime into macOS .app bundles.",
            epilog=(
                "Examples:\n"
                "  macpackager package ./runtime --name MyApp --app-version 1.0\n"
                "  macpackager sign MyApp-darwin-x64/MyApp.app\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--version", action="version", version=f"%(prog)s {__version__}"
        )

        subparsers = parser.add_subparsers(
            title="commands",
            dest="command",
            required=True,
        )

        # --- package subcommand ---
        package_parser = subparsers.add_parser(
            "package",
            help="assemble .app bundles from a runtime",
            description="Assemble macOS .app bundles from a prebuilt runtime.",
            epilog=(
                "Examples:\n"
                "  macpackager package ./runtime --name MyApp\n"
                "  macpackager package ./runtime-{arch} --name MyApp --arch x64 --arch arm64\n"
                "  macpackager package --config release.toml --sign\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        package_parser.add_argument(
            "runtime",
            nargs="?",
            help=(
                "directory containing the runtime bundle; "
                "omit to use an already staged output"
            ),
        )
        package_parser.add_argument("-n", "--name", help="application name")
        package_parser.add_argument("--app-version", help="CFBundleShortVersionString")
        package_parser.add_argument("--build-version", help="CFBundleVersion (default: app version)")
        package_parser.add_argument(
            "--app-category-type",
            metavar="TYPE",
            help="LSApplicationCategoryType, e.g. public.app-category.developer-tools",
        )
        package_parser.add_argument("--app-bundle-id", metavar="ID", help="CFBundleIdentifier")
        package_parser.add_argument("--helper-bundle-id", metavar="ID", help="helper CFBundleIdentifier")
        package_parser.add_argument("--app-copyright", help="NSHumanReadableCopyright")
        package_parser.add_argument(
            "--icon",
            metavar="FILE",
            help="icon path, with or without the .icns extension",
        )
        package_parser.add_argument(
            "--protocol",
            action="append",
            type=_parse_protocol,
            metavar="NAME:SCHEME",
            help="register a URL scheme (repeatable)",
        )
        package_parser.add_argument(
            "--extend-info", metavar="FILE", help="plist with extra Info.plist keys"
        )
        package_parser.add_argument("-o", "--out", metavar="DIR", help="output directory")
        package_parser.add_argument(
            "-a",
            "--arch",
            action="append",
            help=f"target architecture (repeatable, default: {DEFAULT_ARCH})",
        )
        package_parser.add_argument(
            "--platform", choices=SUPPORTED_PLATFORMS, help="target platform"
        )
        package_parser.add_argument(
            "--runtime-name",
            metavar="NAME",
            help=f"runtime bundle name (default: {DEFAULT_RUNTIME_NAME})",
        )
        package_parser.add_argument(
            "--app-dir", metavar="DIR", help="application sources for Resources/app"
        )
        package_parser.add_argument(
            "--sign",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="codesign the bundles (overrides the config file)",
        )
        package_parser.add_argument(
            "-i",
            "--identity",
            metavar="ID",
            help="Developer ID name (or set DEV_ID env var)",
        )
        package_parser.add_argument(
            "-e", "--entitlements", metavar="FILE", help="path to entitlements.plist"
        )
        package_parser.add_argument(
            "-c", "--config", metavar="FILE", help="TOML config file"
        )
        _add_common_options(package_parser)
        package_parser.set_defaults(func=_cmd_package)

        # --- sign subcommand ---
        sign_parser = subparsers.add_parser(
            "sign",
            help="codesign a bundle",
            description="Recursively codesign a macOS bundle and its helpers.",
            epilog=(
                "Examples:\n"
                "  macpackager sign MyApp.app\n"
                "  macpackager sign MyApp.app -i 'John Doe' -e entitlements.plist\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        sign_parser.add_argument("bundle", help="path to the .app bundle")
        sign_parser.add_argument(
            "-i",
            "--identity",
            metavar="ID",
            help="Developer ID name (or set DEV_ID env var)",
        )
        sign_parser.add_argument(
            "-e", "--entitlements", metavar="FILE", help="path to entitlements.plist"
        )
        sign_parser.add_argument(
            "--platform",
            choices=SUPPORTED_PLATFORMS,
            default=DEFAULT_PLATFORM,
            help="target platform",
        )
        _add_common_options(sign_parser)
        sign_parser.set_defaults(func=_cmd_sign)

        args = parser.parse_args(argv)
        args.func(args)

    except PackagerError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    main()

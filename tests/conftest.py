"""Shared fixtures: a fake prebuilt runtime and icon files."""

import plistlib
import shutil
import sys
from pathlib import Path

import pytest

from macpackager import PackagingConfig

RUNTIME_NAME = "Electron"
ICON_BYTES = b"icns\x00\x00\x01\x00fake icon payload"


def _write_executable(path: Path, real_binary: bool = False) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if real_binary:
        shutil.copyfile("/usr/bin/true", path)
    else:
        path.write_bytes(b"#!/bin/sh\nexit 0\n")
    path.chmod(0o755)


def _write_plist(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        plistlib.dump(data, f)


def make_runtime(root: Path, real_binary: bool = False) -> Path:
    """Create ``root/Electron.app`` shaped like a prebuilt runtime."""
    app = root / f"{RUNTIME_NAME}.app"
    contents = app / "Contents"
    _write_plist(
        contents / "Info.plist",
        {
            "CFBundleExecutable": RUNTIME_NAME,
            "CFBundleIdentifier": "com.github.electron",
            "CFBundleName": RUNTIME_NAME,
            "CFBundlePackageType": "APPL",
            "NSPrincipalClass": "AtomApplication",
        },
    )
    _write_executable(contents / "MacOS" / RUNTIME_NAME, real_binary)
    (contents / "Resources").mkdir(parents=True)
    (contents / "Resources" / "atom.icns").write_bytes(b"default icon")

    frameworks = contents / "Frameworks"
    for suffix in ("", " EH", " NP"):
        name = f"{RUNTIME_NAME} Helper{suffix}"
        helper = frameworks / f"{name}.app" / "Contents"
        _write_plist(
            helper / "Info.plist",
            {
                "CFBundleExecutable": name,
                "CFBundleIdentifier": "com.github.electron.helper",
                "CFBundleName": name,
                "LSUIElement": True,
            },
        )
        _write_executable(helper / "MacOS" / name, real_binary)
    return root


@pytest.fixture
def runtime_dir(tmp_path):
    """Directory holding a fake Electron.app runtime."""
    return make_runtime(tmp_path / "runtime")


@pytest.fixture
def icon_dir(tmp_path):
    """Directory with monochrome.icns (and no .ico next to it)."""
    icons = tmp_path / "icons"
    icons.mkdir()
    (icons / "monochrome.icns").write_bytes(ICON_BYTES)
    return icons


@pytest.fixture
def make_config(tmp_path, runtime_dir):
    """Factory merging per-test overrides over a base configuration."""
    base = {
        "app_name": "Test",
        "app_version": "0.0.1",
        "out": tmp_path / "out",
        "runtime": runtime_dir,
    }

    def factory(**overrides):
        return PackagingConfig.from_mapping(base, **overrides)

    return factory


def read_plist(path: Path) -> dict:
    with open(path, "rb") as f:
        return plistlib.load(f)


requires_codesign = pytest.mark.skipif(
    sys.platform != "darwin" or shutil.which("codesign") is None,
    reason="codesign is only available on macOS",
)

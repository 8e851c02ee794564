#!/usr/bin/env python3
"""
Build script for the lrm-sync binary.
Creates standalone executables for macOS and Linux.

Usage:
    python build.py          # Build for current platform
    python build.py --clean  # Clean build artifacts first
"""

import argparse
import platform
import shutil
import subprocess
import sys
from pathlib import Path

BINARY_NAME = "lrm-sync"


def get_platform_name() -> str:
    """Get platform identifier for binary naming."""
    system = platform.system().lower()
    machine = platform.machine().lower()

    if system == "darwin":
        return "macos-arm64" if machine == "arm64" else "macos-x64"
    if system == "linux":
        return "linux-arm64" if machine == "aarch64" else "linux-x64"
    return f"{system}-{machine}"


def clean_build_artifacts(project_root: Path) -> None:
    """Remove build, dist and every __pycache__."""
    for dir_name in ("build", "dist"):
        dir_path = project_root / dir_name
        if dir_path.exists():
            print(f"Removing {dir_path}")
            shutil.rmtree(dir_path)

    for pycache in project_root.rglob("__pycache__"):
        print(f"Removing {pycache}")
        shutil.rmtree(pycache)


def build_binary(project_root: Path) -> Path:
    """Build a one-file binary from lrmsync_main.py with PyInstaller."""
    entry_point = project_root / "lrmsync_main.py"
    if not entry_point.exists():
        print(f"Error: Entry point not found: {entry_point}")
        sys.exit(1)

    print(f"Building {BINARY_NAME} for {get_platform_name()}...")
    print("-" * 50)

    cmd = [
        sys.executable, "-m", "PyInstaller",
        "--clean",
        "--noconfirm",
        "--onefile",
        "--name", BINARY_NAME,
        "--hidden-import", "yaml",
        str(entry_point),
    ]
    result = subprocess.run(cmd, cwd=project_root)
    if result.returncode != 0:
        print("Error: PyInstaller build failed")
        sys.exit(1)

    dist_dir = project_root / "dist"
    binary_path = dist_dir / BINARY_NAME
    if not binary_path.exists():
        print(f"Error: Binary not found at {binary_path}")
        sys.exit(1)

    final_path = dist_dir / f"{BINARY_NAME}-{get_platform_name()}"
    if final_path.exists():
        final_path.unlink()
    binary_path.rename(final_path)
    final_path.chmod(0o755)

    print("-" * 50)
    print(f"Binary built: {final_path}")
    print(f"  Size: {final_path.stat().st_size / 1024 / 1024:.1f} MB")
    return final_path


def main():
    parser = argparse.ArgumentParser(description=f"Build {BINARY_NAME} binary")
    parser.add_argument("--clean", action="store_true", help="Clean build artifacts first")
    args = parser.parse_args()

    project_root = Path(__file__).parent.absolute()
    if args.clean:
        clean_build_artifacts(project_root)

    binary_path = build_binary(project_root)

    print()
    print("To test the binary:")
    print(f"  {binary_path} --help")
    print()
    print("To install globally (optional):")
    print(f"  sudo cp {binary_path} /usr/local/bin/{BINARY_NAME}")


if __name__ == "__main__":
    main()

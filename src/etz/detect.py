"""Repository type detection.

Advisory only: presentation layers use it to pick a build pipeline.
"""

import logging
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

XCODE_SUFFIXES = (".xcodeproj", ".xcworkspace")
IOS_MARKERS = {"Podfile", "Package.swift", "Podfile.lock", "ios"}
GRADLE_MARKERS = {"build.gradle", "build.gradle.kts", "settings.gradle", "settings.gradle.kts"}


class RepoType(str, Enum):
    """Kind of repository."""
    IOS = "ios"
    ANDROID = "android"
    INFRA = "infra"
    UNKNOWN = "unknown"


def xcode_project_name(path: Path) -> str | None:
    """Name of the first Xcode project or workspace directly inside ``path``."""
    try:
        entries = sorted(entry.name for entry in path.iterdir())
    except OSError:
        return None

    for entry in entries:
        for suffix in XCODE_SUFFIXES:
            if entry.endswith(suffix):
                return entry[:-len(suffix)]
    return None


def detect_repo_type(repo_path: str | Path) -> RepoType:
    """Detect the repository type from its directory structure."""
    path = Path(repo_path)
    try:
        if not path.is_dir():
            return RepoType.UNKNOWN
        files = {entry.name for entry in path.iterdir()}
    except OSError as e:
        logger.error(f"Error detecting repo type for {repo_path}: {e}")
        return RepoType.UNKNOWN

    if any(f.endswith(XCODE_SUFFIXES) for f in files) or files & IOS_MARKERS:
        return RepoType.IOS

    if (files & GRADLE_MARKERS or "AndroidManifest.xml" in files
            or ("android" in files and "gradlew" in files)):
        return RepoType.ANDROID

    # Monorepo layouts keep the platform project one level down
    for name in sorted(files):
        subdir = path / name
        if not subdir.is_dir():
            continue
        try:
            children = {entry.name for entry in subdir.iterdir()}
        except OSError:
            continue
        if name == "ios" and any(c.endswith(XCODE_SUFFIXES) for c in children):
            return RepoType.IOS
        if name == "android" and children & {"build.gradle", "build.gradle.kts"}:
            return RepoType.ANDROID

    if any("infra" in f or "shared" in f or "common" in f for f in files):
        return RepoType.INFRA

    return RepoType.UNKNOWN


def detect_repo_type_by_name(repo_name: str) -> RepoType:
    """Guess the repository type from naming conventions."""
    name = repo_name.lower()

    if name.endswith(".ios") or "-ios" in name or "_ios" in name:
        return RepoType.IOS

    if name.endswith(".android") or "-android" in name or "_android" in name:
        return RepoType.ANDROID

    if "infra" in name or "shared" in name or "common" in name:
        return RepoType.INFRA

    return RepoType.UNKNOWN


def detect_repo_type_with_fallback(repo_path: str | Path, repo_name: str) -> RepoType:
    """Structure based detection, falling back to the repository name."""
    detected = detect_repo_type(repo_path)
    if detected is not RepoType.UNKNOWN:
        return detected
    return detect_repo_type_by_name(repo_name)

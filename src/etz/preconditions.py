"""Read-only readiness checks run before a platform build."""

import logging
import re
from collections.abc import Callable
from pathlib import Path

from .config import Config
from .exceptions import InvalidNameError
from .models import BuildPreCheckResult, BuildPreCondition, BuildType, CheckStatus, Platform
from .utils import FileUtils
from .validation import validate_path_component

logger = logging.getLogger(__name__)

PACKAGE_NAME_RE = re.compile(r'let\s+(\w+)_packageName\s+=\s+"([^"]+)"')
LOCAL_KOTLIN_URL_RE = re.compile(r'let\s+(\w+)_localKotlinUrl\s+=\s+"([^"]+)"')
PACKAGE_NAME_PLACEHOLDER_RE = re.compile(r"\\?\((\w+)_packageName\)")

RunningCheck = Callable[[str, BuildType], bool]


def _condition(id: str, name: str, status: CheckStatus, message: str,
               fix_action: BuildType | None = None) -> BuildPreCondition:
    return BuildPreCondition(
        id=id,
        name=name,
        status=status,
        message=message,
        can_auto_fix=fix_action is not None,
        fix_action=fix_action.value if fix_action else None,
    )


def check_pods(label: str, ios_path: Path, is_running: RunningCheck) -> BuildPreCondition | None:
    """CocoaPods state; None when the project has no Podfile."""
    if not (ios_path / "Podfile").exists():
        return None

    name = "CocoaPods Dependencies"
    if is_running(label, BuildType.POD_INSTALL):
        return _condition("ios_pods_installed", name, CheckStatus.WARNING,
                          "Pod install is currently running...")

    podfile_lock = FileUtils.read_file(ios_path / "Podfile.lock")
    manifest_lock = FileUtils.read_file(ios_path / "Pods" / "Manifest.lock")
    if podfile_lock is None or manifest_lock is None:
        return _condition("ios_pods_installed", name, CheckStatus.FAIL,
                          "Pods not installed. Run pod install first.",
                          fix_action=BuildType.POD_INSTALL)

    if podfile_lock == manifest_lock:
        return _condition("ios_pods_installed", name, CheckStatus.PASS,
                          "Pods installed and up-to-date")

    return _condition("ios_pods_installed", name, CheckStatus.WARNING,
                      "Podfile.lock and Manifest.lock mismatch. Run pod install.",
                      fix_action=BuildType.POD_INSTALL)


def check_local_infra_reference(ios_path: Path, reference: str) -> BuildPreCondition | None:
    """Whether the app's Package.swift points at the sibling infra checkout."""
    content = FileUtils.read_file(ios_path / "Package.swift")
    if content is None:
        return None

    name = "Package.swift Local Reference"
    if reference in content:
        return _condition("ios_local_infra_ref", name, CheckStatus.PASS,
                          f"Package.swift points to local infra ({reference})")
    return _condition("ios_local_infra_ref", name, CheckStatus.WARNING,
                      "Package.swift may be pointing to remote infra instead of local")


def referenced_xcframeworks(package_swift: str) -> dict[str, str]:
    """Map package name to the XCFramework path declared in an infra Package.swift.

    Placeholders such as ``\\(Shared_packageName)`` in the local URL are
    replaced with the declared package name.
    """
    package_names = dict(PACKAGE_NAME_RE.findall(package_swift))

    frameworks = {}
    for prefix, template in LOCAL_KOTLIN_URL_RE.findall(package_swift):
        package_name = package_names.get(prefix, prefix)
        frameworks[package_name] = PACKAGE_NAME_PLACEHOLDER_RE.sub(lambda _: package_name, template)
    return frameworks


def check_infra_xcframeworks(infra_path: Path) -> BuildPreCondition:
    """Whether every XCFramework the infra Package.swift references is built."""
    name = "Infra XCFramework"
    content = FileUtils.read_file(infra_path / "Package.swift")
    if content is None:
        return _condition("ios_infra_built", name, CheckStatus.FAIL,
                          "Package.swift not found in infra worktree. Build infra first.",
                          fix_action=BuildType.BUILD_INFRA_IOS)

    found, missing = [], []
    for package_name, relative in referenced_xcframeworks(content).items():
        if (infra_path / relative).exists():
            found.append(package_name)
        else:
            missing.append(package_name)

    if missing:
        return _condition("ios_infra_built", name, CheckStatus.FAIL,
                          f"Missing XCFrameworks: {', '.join(missing)}. Build infra first.",
                          fix_action=BuildType.BUILD_INFRA_IOS)
    if found:
        return _condition("ios_infra_built", name, CheckStatus.PASS,
                          f"All XCFrameworks built: {', '.join(found)}")
    return _condition("ios_infra_built", name, CheckStatus.WARNING,
                      "No local XCFramework paths found in Package.swift. You can build infra to create them.",
                      fix_action=BuildType.BUILD_INFRA_IOS)


def _infra_worktree(infra_path: Path, infra_repo: str) -> BuildPreCondition:
    if infra_path.exists():
        return _condition("infra_worktree_exists", "Infra Worktree", CheckStatus.PASS,
                          f"{infra_repo} worktree exists")
    return _condition("infra_worktree_exists", "Infra Worktree", CheckStatus.FAIL,
                      f"{infra_repo} worktree not found")


def check_ios(config: Config, label: str, ios_path: Path, infra_path: Path,
              is_running: RunningCheck) -> list[BuildPreCondition]:
    """Ordered iOS checks."""
    conditions = []

    pods = check_pods(label, ios_path, is_running)
    if pods:
        conditions.append(pods)

    reference = check_local_infra_reference(ios_path, config.build.infra_reference)
    if reference:
        conditions.append(reference)

    infra = _infra_worktree(infra_path, config.build.infra_repo)
    conditions.append(infra)
    if infra.status is CheckStatus.PASS:
        conditions.append(check_infra_xcframeworks(infra_path))

    return conditions


def check_android(config: Config, android_path: Path, infra_path: Path) -> list[BuildPreCondition]:
    """Ordered Android checks."""
    conditions = []

    infra = _infra_worktree(infra_path, config.build.infra_repo)
    conditions.append(infra)
    if infra.status is CheckStatus.PASS:
        if (infra_path / "build" / "outputs").exists():
            conditions.append(_condition("android_infra_built", "Infra Android Build",
                                         CheckStatus.PASS, "Android infra is built"))
        else:
            # No runner exists for the Android infra build, so nothing to auto-fix
            conditions.append(_condition("android_infra_built", "Infra Android Build",
                                         CheckStatus.FAIL, "Android infra not built"))

    if (android_path / "gradlew").exists():
        conditions.append(_condition("android_gradle_exists", "Gradle Wrapper",
                                     CheckStatus.PASS, "Gradle wrapper found"))
    else:
        conditions.append(_condition("android_gradle_exists", "Gradle Wrapper",
                                     CheckStatus.FAIL, "Gradle wrapper not found"))

    return conditions


def check_pre_conditions(config: Config, label: str, platform: Platform, repo: str,
                         is_running: RunningCheck | None = None) -> BuildPreCheckResult:
    """Assess whether ``repo`` under ``label`` is ready for a ``platform`` build.

    Nothing is mutated. ``ready`` is true when no condition failed; warnings
    do not block a build.
    """
    is_running = is_running or (lambda _label, _type: False)

    try:
        validate_path_component(label, "label")
        validate_path_component(repo, "repo")
    except InvalidNameError as e:
        return BuildPreCheckResult(platform=platform, repo=repo, ready=False, conditions=[
            _condition("validation_error", "Input Validation", CheckStatus.FAIL, str(e)),
        ])

    label_dir = config.worktrees_dir / label
    repo_path = label_dir / repo
    infra_path = label_dir / config.build.infra_repo

    if not repo_path.exists():
        return BuildPreCheckResult(platform=platform, repo=repo, ready=False, conditions=[
            _condition("repo_exists", "Repository Worktree", CheckStatus.FAIL,
                       f"{repo} worktree not found at {repo_path}"),
        ])

    conditions = [_condition("repo_exists", "Repository Worktree", CheckStatus.PASS,
                             f"{repo} worktree exists")]

    if platform is Platform.IOS:
        conditions.extend(check_ios(config, label, repo_path, infra_path, is_running))
    else:
        conditions.extend(check_android(config, repo_path, infra_path))

    ready = not any(c.status is CheckStatus.FAIL for c in conditions)
    logger.debug(f"Pre-conditions for {platform.value} {repo}@{label}: ready={ready}")
    return BuildPreCheckResult(platform=platform, repo=repo, ready=ready, conditions=conditions)

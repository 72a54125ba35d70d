"""Tracking of long-running build subprocesses for worktree groups."""

import asyncio
import logging
import plistlib
import shutil
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from .config import Config
from .exceptions import BuildError, EtzError, InvalidNameError
from .models import (
    ActiveBuildInfo,
    BuildPreCheckResult,
    BuildProcessResult,
    BuildProgress,
    BuildResult,
    BuildType,
    Platform,
)
from .preconditions import check_pre_conditions
from .utils import ProcessUtils
from .validation import validate_path_component

logger = logging.getLogger(__name__)

MAX_OUTPUT_BUFFER_SIZE = 500
STREAM_LIMIT = 1024 * 1024  # longest single output line accepted
TRUNCATED_LINE = "[output line too long, truncated]"

ProgressCallback = Callable[[BuildProgress], None]
PostProcess = Callable[["ActiveBuild"], Awaitable[str]]


# Progress estimation strategies. Each maps one line of tool output to a
# rough 0-100 estimate; the tracker keeps the running maximum.

def estimate_pod_install_progress(line: str) -> int:
    """Approximate ``pod install`` progress."""
    if "Generating Pods project" in line:
        return 80
    if "Installing" in line:
        return 60
    if "Downloading dependencies" in line:
        return 40
    if "Analyzing dependencies" in line:
        return 20
    return 10


def estimate_infra_ios_progress(line: str) -> int:
    """Approximate Gradle XCFramework build progress."""
    if "BUILD SUCCESSFUL" in line:
        return 100
    if "spmDevBuild" in line:
        return 92
    if "copyFramework" in line or "Copying" in line:
        return 88
    if "assembleXCFramework" in line or "xcframework" in line:
        return 82
    if "linkReleaseStatic" in line:
        return 75
    if "Linking" in line:
        return 70
    if "linkDebug" in line or ":link" in line:
        return 65
    if "Compiling" in line or "compiling" in line:
        return 50
    if ":shared:" in line and "compileKotlin" in line:
        return 45
    if "compileKotlinIos" in line:
        return 35
    if "compileKotlin" in line and "UP-TO-DATE" in line:
        return 30
    if "configuration complete" in line:
        return 25
    if "Resolving dependencies" in line or "Download" in line:
        return 18
    if "Configuring project" in line or ":prepareKotlin" in line:
        return 12
    if "Parsing build file" in line or "Applying script" in line:
        return 8
    return 5


def estimate_ios_archive_progress(line: str) -> int:
    """Approximate ``xcodebuild archive`` progress; export covers 80-100."""
    if "ARCHIVE SUCCEEDED" in line:
        return 80
    if "Touching" in line:
        return 70
    if "Linking" in line:
        return 60
    if "Compiling" in line or "Compile" in line:
        return 40
    if "Building workspace" in line:
        return 20
    return 10


def estimate_android_progress(line: str) -> int:
    """Approximate ``gradlew assembleDebug`` progress."""
    if "BUILD SUCCESSFUL" in line:
        return 100
    if "Compiling" in line:
        return 50
    if "Configuring" in line:
        return 20
    return 10


PROGRESS_ESTIMATORS: dict[BuildType, Callable[[str], int]] = {
    BuildType.POD_INSTALL: estimate_pod_install_progress,
    BuildType.BUILD_INFRA_IOS: estimate_infra_ios_progress,
    BuildType.BUILD_IOS: estimate_ios_archive_progress,
    BuildType.BUILD_ANDROID: estimate_android_progress,
}


@dataclass
class BuildProcessSpec:
    """Everything needed to run one tracked build subprocess."""
    label: str
    build_type: BuildType
    command: list[str]
    cwd: Path
    stage: str
    start_message: str
    complete_message: str
    estimate_progress: Callable[[str], int] | None = None


@dataclass
class ActiveBuild:
    """A running build subprocess owned by the tracker."""
    label: str
    build_type: BuildType
    process: asyncio.subprocess.Process | None = None
    start_time: float = field(default_factory=time.monotonic)
    output_buffer: deque = field(default_factory=lambda: deque(maxlen=MAX_OUTPUT_BUFFER_SIZE))
    killed: bool = False
    progress: int = 0

    def terminate(self) -> None:
        """Send the terminate signal; no graceful handshake."""
        self.killed = True
        if self.process is not None and self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass

    def attach(self, process: asyncio.subprocess.Process) -> None:
        """Make ``process`` the one a kill terminates."""
        self.process = process
        if self.killed:
            self.terminate()


class BuildTracker:
    """Registry of active builds keyed by ``(label, build type)``.

    At most one build runs per key; a second request for an active key is
    rejected, never queued. Distinct keys run concurrently. The registry is
    only touched from the event loop thread.
    """

    def __init__(self, config: Config):
        """Initialize the tracker.

        Args:
            config: Configuration with the worktree root and build settings
        """
        self.config = config
        self.active_builds: dict[tuple[str, BuildType], ActiveBuild] = {}

    def repo_path(self, label: str, repo_name: str) -> Path:
        """Worktree path of ``repo_name`` under ``label``."""
        return self.config.worktrees_dir / label / repo_name

    # Registry queries

    @staticmethod
    def _valid_label(label: str) -> bool:
        try:
            validate_path_component(label, "label")
            return True
        except InvalidNameError:
            return False

    def _builds_for_label(self, label: str) -> list[ActiveBuild]:
        return [build for (key_label, _), build in self.active_builds.items() if key_label == label]

    def is_build_in_progress(self, label: str, build_type: BuildType | None = None) -> bool:
        """Check for an active build for the label (and type, if given)."""
        if not self._valid_label(label):
            return False
        if build_type is not None:
            return (label, BuildType(build_type)) in self.active_builds
        return bool(self._builds_for_label(label))

    def get_active_build_info(self, label: str) -> ActiveBuildInfo | None:
        """Type and running time of the first active build for the label."""
        if not self._valid_label(label):
            return None
        for build in self._builds_for_label(label):
            duration_ms = int((time.monotonic() - build.start_time) * 1000)
            return ActiveBuildInfo(build_type=build.build_type, duration_ms=duration_ms)
        return None

    def get_build_output(self, label: str, build_type: BuildType | None = None) -> list[str]:
        """Buffered output lines (at most the last 500) of an active build."""
        if not self._valid_label(label):
            return []
        if build_type is not None:
            build = self.active_builds.get((label, BuildType(build_type)))
            return list(build.output_buffer) if build else []
        for build in self._builds_for_label(label):
            return list(build.output_buffer)
        return []

    def kill_build(self, label: str, build_type: BuildType) -> bool:
        """Terminate an active build and drop it from the registry."""
        if not self._valid_label(label):
            return False
        build = self.active_builds.pop((label, BuildType(build_type)), None)
        if build is None:
            return False
        build.terminate()
        logger.info(f"Killed {build.build_type.value} for {label}")
        return True

    def kill_all_builds_for_label(self, label: str) -> int:
        """Terminate every active build for the label.

        Returns:
            Number of builds killed
        """
        if not self._valid_label(label):
            return 0
        count = 0
        for build in self._builds_for_label(label):
            if self.kill_build(label, build.build_type):
                count += 1
        return count

    def check_pre_conditions(self, label: str, platform: Platform, repo: str) -> BuildPreCheckResult:
        """Read-only readiness inspection for a platform build."""
        return check_pre_conditions(self.config, label, Platform(platform), repo,
                                    is_running=self.is_build_in_progress)

    # Running builds

    def _release(self, key: tuple[str, BuildType], build: ActiveBuild) -> None:
        # A killed build may already have been replaced by a new one
        if self.active_builds.get(key) is build:
            del self.active_builds[key]

    @staticmethod
    def _emit(on_progress: ProgressCallback | None, label: str, stage: str,
              progress: int, message: str) -> None:
        if on_progress is None:
            return
        try:
            on_progress(BuildProgress(label=label, stage=stage, progress=progress, message=message))
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    async def _pump(self, stream: asyncio.StreamReader, spec: BuildProcessSpec, build: ActiveBuild,
                    sink: list[str], on_progress: ProgressCallback | None) -> None:
        estimate = spec.estimate_progress or PROGRESS_ESTIMATORS.get(spec.build_type)
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than STREAM_LIMIT; readline already dropped what it buffered
                build.output_buffer.append(TRUNCATED_LINE)
                continue
            if not raw:
                break
            text = raw.decode(errors="replace")
            sink.append(text)
            line = text.rstrip("\r\n")
            if not line.strip():
                continue
            build.output_buffer.append(line)
            if estimate is not None:
                build.progress = min(100, max(build.progress, estimate(line)))
            self._emit(on_progress, spec.label, spec.stage, build.progress, line)

    async def run_build_process(self, spec: BuildProcessSpec,
                                on_progress: ProgressCallback | None = None,
                                post_process: PostProcess | None = None) -> BuildProcessResult:
        """Run a build subprocess, streaming and buffering its output.

        Args:
            spec: Command, working directory and progress strategy
            on_progress: Called for every output line with an estimate
            post_process: Awaited with the build after a successful exit while
                it is still registered; its return value is appended to the
                output and an exception turns the build into a failure. A
                kill during this step cancels the build

        Returns:
            BuildProcessResult with stdout as output and stderr as error
        """
        try:
            validate_path_component(spec.label, "label")
        except InvalidNameError as e:
            return BuildProcessResult(success=False, output="", error=str(e))

        key = (spec.label, spec.build_type)
        if key in self.active_builds:
            return BuildProcessResult(success=False, output="",
                                      error=f"{spec.build_type.value} already in progress")

        # Reserve the key before the first await
        build = ActiveBuild(label=spec.label, build_type=spec.build_type)
        self.active_builds[key] = build
        self._emit(on_progress, spec.label, spec.stage, 0, spec.start_message)
        logger.info(f"Starting {spec.build_type.value} for {spec.label}: {' '.join(spec.command)}")

        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    *spec.command,
                    cwd=str(spec.cwd),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    limit=STREAM_LIMIT,
                )
            except OSError as e:
                logger.error(f"Failed to start {spec.build_type.value}: {e}")
                return BuildProcessResult(success=False, output="",
                                          error=f"Failed to start {spec.build_type.value}: {e}")

            build.attach(process)

            stdout: list[str] = []
            stderr: list[str] = []
            await asyncio.gather(
                self._pump(process.stdout, spec, build, stdout, on_progress),
                self._pump(process.stderr, spec, build, stderr, on_progress),
            )
            code = await process.wait()
            output = "".join(stdout)

            if build.killed:
                return BuildProcessResult(success=False, output=output,
                                          error=f"{spec.build_type.value} was cancelled")

            if code != 0:
                logger.error(f"{spec.build_type.value} for {spec.label} exited with code {code}")
                return BuildProcessResult(success=False, output=output,
                                          error="".join(stderr) or f"{spec.build_type.value} failed with code {code}")

            if post_process is not None:
                try:
                    extra = await post_process(build)
                except (EtzError, OSError) as e:
                    if build.killed:
                        return BuildProcessResult(success=False, output=output,
                                                  error=f"{spec.build_type.value} was cancelled")
                    self._emit(on_progress, spec.label, spec.stage, 100, str(e))
                    return BuildProcessResult(success=False, output=output, error=str(e))
                if build.killed:
                    return BuildProcessResult(success=False, output=output,
                                              error=f"{spec.build_type.value} was cancelled")
                if extra:
                    output += f"\n\n{extra}"

            self._emit(on_progress, spec.label, spec.stage, 100, spec.complete_message)
            return BuildProcessResult(success=True, output=output)
        finally:
            # Reached with a live child only on error or caller cancellation
            running = build.process
            if running is not None and running.returncode is None:
                build.terminate()
                await running.wait()
            self._release(key, build)

    # Pipelines

    async def run_pod_install(self, label: str,
                              on_progress: ProgressCallback | None = None) -> BuildProcessResult:
        """Install CocoaPods dependencies in the iOS worktree."""
        return await self.run_build_process(BuildProcessSpec(
            label=label,
            build_type=BuildType.POD_INSTALL,
            command=["pod", "install"],
            cwd=self.repo_path(label, self.config.build.ios_repo),
            stage="pod_install",
            start_message="Starting pod install...",
            complete_message="Pod install completed",
        ), on_progress)

    async def build_infra_ios(self, label: str,
                              on_progress: ProgressCallback | None = None) -> BuildProcessResult:
        """Build the infra XCFrameworks consumed by the iOS app."""
        return await self.run_build_process(BuildProcessSpec(
            label=label,
            build_type=BuildType.BUILD_INFRA_IOS,
            command=["./gradlew", "spmDevBuild", "-PspmBuildTargets=ios_arm64",
                     "--console=plain", "--info"],
            cwd=self.repo_path(label, self.config.build.infra_repo),
            stage="build_infra",
            start_message="Building iOS infra XCFramework...",
            complete_message="Infra build completed",
        ), on_progress)

    async def export_ipa(self, repo_path: Path, archive_path: Path, export_path: Path,
                         build: ActiveBuild | None = None) -> str:
        """Export an Xcode archive to an IPA and copy it to the repository root.

        When ``build`` is given the export process is attached to it, so
        killing the build also stops the export.

        Raises:
            BuildError: If the export fails, is killed or produces no IPA
        """
        export_options = repo_path / "build" / "exportOptions.plist"
        export_options.parent.mkdir(parents=True, exist_ok=True)
        with open(export_options, "wb") as fh:
            plistlib.dump({"method": "development", "compileBitcode": False}, fh)

        code, _, stderr = await ProcessUtils.run_command([
            "xcodebuild",
            "-exportArchive",
            "-archivePath", str(archive_path),
            "-exportPath", str(export_path),
            "-exportOptionsPlist", str(export_options),
        ], cwd=repo_path, on_start=build.attach if build is not None else None)
        if build is not None and build.killed:
            raise BuildError("Export cancelled")
        if code != 0:
            raise BuildError(f"Export failed: {stderr.strip() or f'exit code {code}'}")

        ipa_files = sorted(export_path.glob("*.ipa")) if export_path.is_dir() else []
        if not ipa_files:
            raise BuildError("Export failed: No IPA file found in export directory")

        target = repo_path / self.config.build.ipa_name
        try:
            shutil.copyfile(ipa_files[0], target)
        except OSError as e:
            raise BuildError(f"Export failed: {e}") from e
        return f"IPA saved to: {target}"

    async def build_ios(self, label: str,
                        on_progress: ProgressCallback | None = None) -> BuildResult:
        """Archive the iOS app, then export it to an installable IPA.

        The export runs only after the archive succeeds and its failure fails
        the whole build.
        """
        settings = self.config.build
        start = time.monotonic()
        repo_path = self.repo_path(label, settings.ios_repo)
        archive_path = repo_path / "build" / "Project.xcarchive"
        export_path = repo_path / "build" / "export"

        async def export(build: ActiveBuild) -> str:
            self._emit(on_progress, label, "build_ios", 85, "Exporting archive to IPA...")
            return await self.export_ipa(repo_path, archive_path, export_path, build)

        result = await self.run_build_process(BuildProcessSpec(
            label=label,
            build_type=BuildType.BUILD_IOS,
            command=[
                "xcodebuild",
                "-workspace", settings.ios_workspace,
                "-scheme", settings.ios_scheme,
                "-configuration", settings.ios_configuration,
                "-archivePath", str(archive_path),
                "archive",
                "-allowProvisioningUpdates",
            ],
            cwd=repo_path,
            stage="build_ios",
            start_message=f"Starting iOS archive for {settings.ios_scheme}...",
            complete_message="iOS build completed",
        ), on_progress, post_process=export)

        return BuildResult(success=result.success, platform=Platform.IOS, repo=settings.ios_repo,
                           duration=time.monotonic() - start, output=result.output, error=result.error)

    async def build_android(self, label: str,
                            on_progress: ProgressCallback | None = None) -> BuildResult:
        """Assemble the Android debug build."""
        settings = self.config.build
        start = time.monotonic()
        result = await self.run_build_process(BuildProcessSpec(
            label=label,
            build_type=BuildType.BUILD_ANDROID,
            command=["./gradlew", "assembleDebug"],
            cwd=self.repo_path(label, settings.android_repo),
            stage="build_android",
            start_message="Starting Android build...",
            complete_message="Android build completed",
        ), on_progress)

        return BuildResult(success=result.success, platform=Platform.ANDROID, repo=settings.android_repo,
                           duration=time.monotonic() - start, output=result.output, error=result.error)

    async def run_build(self, label: str, platform: Platform,
                        on_progress: ProgressCallback | None = None) -> BuildResult:
        """Full build for a platform."""
        if Platform(platform) is Platform.IOS:
            return await self.build_ios(label, on_progress)
        return await self.build_android(label, on_progress)

    async def run_fix_action(self, label: str, action: str,
                             on_progress: ProgressCallback | None = None) -> BuildProcessResult:
        """Run the fix action named by a pre-condition."""
        fixes = {
            BuildType.POD_INSTALL.value: self.run_pod_install,
            BuildType.BUILD_INFRA_IOS.value: self.build_infra_ios,
        }
        fix = fixes.get(action)
        if fix is None:
            return BuildProcessResult(success=False, output="", error=f"Unknown fix action: {action}")
        return await fix(label, on_progress)

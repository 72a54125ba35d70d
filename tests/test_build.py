"""Tests for the build process tracker."""

import asyncio
import sys
from unittest.mock import AsyncMock, patch

import pytest

from etz.build import (
    MAX_OUTPUT_BUFFER_SIZE,
    STREAM_LIMIT,
    TRUNCATED_LINE,
    ActiveBuild,
    BuildProcessSpec,
    BuildTracker,
    estimate_android_progress,
    estimate_infra_ios_progress,
    estimate_pod_install_progress,
)
from etz.exceptions import BuildError
from etz.models import BuildProcessResult, BuildType, CheckStatus, Platform
from etz.utils import ProcessUtils

LONG_RUNNING = "import time; print('started', flush=True); time.sleep(30)"


@pytest.fixture
def tracker(empty_config):
    """Create a BuildTracker for testing."""
    return BuildTracker(empty_config)


def python_spec(tmp_path, script: str, label: str = "feature-x",
                build_type: BuildType = BuildType.BUILD_ANDROID) -> BuildProcessSpec:
    return BuildProcessSpec(
        label=label,
        build_type=build_type,
        command=[sys.executable, "-c", script],
        cwd=tmp_path,
        stage="test",
        start_message="Starting...",
        complete_message="Done",
    )


async def wait_until(predicate, timeout: float = 5.0) -> None:
    """Poll ``predicate`` until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
class TestRunBuildProcess:
    """Test cases for BuildTracker.run_build_process."""

    async def test_success(self, tracker, tmp_path):
        """Test output capture and progress events of a successful build."""
        events = []
        script = "print('Configuring project'); print(''); print('Compiling sources'); print('BUILD SUCCESSFUL')"

        result = await tracker.run_build_process(python_spec(tmp_path, script), events.append)

        assert result.success
        assert "Compiling sources" in result.output
        assert result.error is None
        progress = [e.progress for e in events]
        assert progress[0] == 0
        assert progress[-1] == 100
        assert progress == sorted(progress)
        assert events[-1].message == "Done"
        # Blank lines are not forwarded
        assert all(e.message.strip() for e in events)
        assert not tracker.is_build_in_progress("feature-x")

    async def test_progress_never_decreases(self, tracker, tmp_path):
        """Test that a lower estimate after a higher one is ignored."""
        events = []
        script = "print('Compiling'); print('Configuring'); print('other')"

        await tracker.run_build_process(python_spec(tmp_path, script), events.append)

        assert [e.progress for e in events[1:4]] == [50, 50, 50]

    async def test_custom_estimator(self, tracker, tmp_path):
        """Test that a per-process estimator replaces the default one."""
        events = []
        spec = python_spec(tmp_path, "print('a'); print('b')")
        spec.estimate_progress = lambda line: 42

        await tracker.run_build_process(spec, events.append)

        assert events[1].progress == 42

    async def test_stderr_lines_reported(self, tracker, tmp_path):
        """Test that stderr lines reach the progress callback and the buffer."""
        seen = []
        script = "import sys; print('warning: deprecated', file=sys.stderr)"

        result = await tracker.run_build_process(python_spec(tmp_path, script),
                                                 lambda e: seen.append(e.message))

        assert result.success
        assert "warning: deprecated" in seen

    async def test_non_zero_exit_with_stderr(self, tracker, tmp_path):
        """Test that stderr becomes the error of a failed build."""
        script = "import sys; print('partial'); print('fatal: broken', file=sys.stderr); sys.exit(3)"

        result = await tracker.run_build_process(python_spec(tmp_path, script))

        assert not result.success
        assert "partial" in result.output
        assert "fatal: broken" in result.error
        assert not tracker.is_build_in_progress("feature-x")

    async def test_non_zero_exit_without_stderr(self, tracker, tmp_path):
        """Test the generic error for a silent failure."""
        result = await tracker.run_build_process(python_spec(tmp_path, "import sys; sys.exit(3)"))

        assert not result.success
        assert result.error == "build_android failed with code 3"

    async def test_spawn_failure(self, tracker, tmp_path):
        """Test that a missing executable fails cleanly and releases the key."""
        spec = python_spec(tmp_path, "")
        spec.command = ["/nonexistent/etz-build-tool"]

        result = await tracker.run_build_process(spec)

        assert not result.success
        assert "Failed to start" in result.error
        assert not tracker.is_build_in_progress("feature-x")

    async def test_invalid_label(self, tracker, tmp_path):
        """Test that invalid labels never spawn a process."""
        result = await tracker.run_build_process(python_spec(tmp_path, "print('x')", label="../x"))

        assert not result.success
        assert tracker.active_builds == {}

    async def test_mutual_exclusion(self, tracker, tmp_path):
        """Test that a second build of the same type for a label is rejected."""
        first = asyncio.create_task(tracker.run_build_process(python_spec(tmp_path, LONG_RUNNING)))
        await wait_until(lambda: tracker.get_build_output("feature-x") == ["started"])

        second = await tracker.run_build_process(python_spec(tmp_path, "print('x')"))
        assert not second.success
        assert second.error == "build_android already in progress"

        assert tracker.kill_build("feature-x", BuildType.BUILD_ANDROID)
        result = await first
        assert not result.success
        assert result.error == "build_android was cancelled"

        # The key is free again once the killed build has finished
        third = await tracker.run_build_process(python_spec(tmp_path, "print('again')"))
        assert third.success
        assert tracker.active_builds == {}

    async def test_reservation_before_spawn(self, tracker, tmp_path):
        """Test that the key is taken before the process has started."""
        first = asyncio.create_task(tracker.run_build_process(python_spec(tmp_path, "print('x')")))
        await asyncio.sleep(0)

        assert tracker.is_build_in_progress("feature-x", BuildType.BUILD_ANDROID)
        second = await tracker.run_build_process(python_spec(tmp_path, "print('y')"))
        assert "already in progress" in second.error
        assert (await first).success

        third = await tracker.run_build_process(python_spec(tmp_path, "print('z')"))
        assert third.success
        assert third.output == "z\n"

    async def test_overlong_output_line(self, tracker, tmp_path):
        """Test that a line longer than the stream limit does not break the build."""
        snapshots = {}

        def on_progress(event):
            if event.message == "done":
                snapshots["buffer"] = tracker.get_build_output("feature-x", BuildType.BUILD_ANDROID)

        script = f"print('x' * {2 * STREAM_LIMIT}); print('done')"
        result = await tracker.run_build_process(python_spec(tmp_path, script), on_progress)

        assert result.success
        assert result.output.endswith("done\n")
        assert TRUNCATED_LINE in snapshots["buffer"]
        assert tracker.active_builds == {}

    async def test_cancelled_caller_terminates_process(self, tracker, tmp_path):
        """Test that cancelling the awaiting task stops the subprocess."""
        task = asyncio.create_task(tracker.run_build_process(python_spec(tmp_path, LONG_RUNNING)))
        await wait_until(lambda: tracker.get_build_output("feature-x") == ["started"])
        build = tracker.active_builds[("feature-x", BuildType.BUILD_ANDROID)]

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert build.process.returncode is not None
        assert tracker.active_builds == {}

    async def test_different_keys_run_concurrently(self, tracker, tmp_path):
        """Test that distinct labels and build types do not block each other."""
        script = "import time; time.sleep(0.2); print('ok')"

        results = await asyncio.gather(
            tracker.run_build_process(python_spec(tmp_path, script)),
            tracker.run_build_process(python_spec(tmp_path, script, build_type=BuildType.POD_INSTALL)),
            tracker.run_build_process(python_spec(tmp_path, script, label="other")),
        )

        assert all(r.success for r in results)

    async def test_output_buffer_bound(self, tracker, tmp_path):
        """Test that only the most recent lines are buffered."""
        snapshots = {}

        def on_progress(event):
            if event.message == "line 999":
                snapshots["buffer"] = tracker.get_build_output("feature-x", BuildType.BUILD_ANDROID)

        script = "for i in range(1000): print(f'line {i}')"
        result = await tracker.run_build_process(python_spec(tmp_path, script), on_progress)

        assert result.success
        buffer = snapshots["buffer"]
        assert len(buffer) == MAX_OUTPUT_BUFFER_SIZE
        assert buffer[0] == "line 500"
        assert buffer[-1] == "line 999"
        # The full output is still returned
        assert result.output.count("\n") == 1000

    async def test_kill_all_for_label(self, tracker, tmp_path):
        """Test killing every build of a label."""
        tasks = [
            asyncio.create_task(tracker.run_build_process(python_spec(tmp_path, LONG_RUNNING))),
            asyncio.create_task(tracker.run_build_process(
                python_spec(tmp_path, LONG_RUNNING, build_type=BuildType.POD_INSTALL))),
            asyncio.create_task(tracker.run_build_process(python_spec(tmp_path, LONG_RUNNING, label="other"))),
        ]
        await wait_until(lambda: len(tracker.get_build_output("other")) == 1)

        assert tracker.kill_all_builds_for_label("feature-x") == 2
        assert not tracker.is_build_in_progress("feature-x")
        assert tracker.is_build_in_progress("other")

        tracker.kill_build("other", BuildType.BUILD_ANDROID)
        results = await asyncio.gather(*tasks)
        assert not any(r.success for r in results)

    async def test_active_build_info(self, tracker, tmp_path):
        """Test the snapshot of a running build."""
        task = asyncio.create_task(tracker.run_build_process(python_spec(tmp_path, LONG_RUNNING)))
        await wait_until(lambda: tracker.get_build_output("feature-x"))

        info = tracker.get_active_build_info("feature-x")
        assert info.build_type == BuildType.BUILD_ANDROID
        assert info.duration_ms >= 0
        assert tracker.get_active_build_info("other") is None

        tracker.kill_build("feature-x", BuildType.BUILD_ANDROID)
        await task

    async def test_post_process_success(self, tracker, tmp_path):
        """Test that post-processing runs while the build is registered."""
        registered = []

        async def post_process(build):
            assert build.build_type == BuildType.BUILD_ANDROID
            registered.append(tracker.is_build_in_progress("feature-x", BuildType.BUILD_ANDROID))
            return "IPA saved to: /tmp/app.ipa"

        result = await tracker.run_build_process(python_spec(tmp_path, "print('archived')"),
                                                 post_process=post_process)

        assert result.success
        assert registered == [True]
        assert result.output.endswith("IPA saved to: /tmp/app.ipa")

    async def test_post_process_failure_fails_build(self, tracker, tmp_path):
        """Test that a failed post-processing step fails the whole build."""
        post_process = AsyncMock(side_effect=BuildError("Export failed: no signing identity"))

        result = await tracker.run_build_process(python_spec(tmp_path, "print('archived')"),
                                                 post_process=post_process)

        assert not result.success
        assert result.error == "Export failed: no signing identity"
        assert not tracker.is_build_in_progress("feature-x")

    async def test_post_process_skipped_on_failure(self, tracker, tmp_path):
        """Test that post-processing does not run after a failed build."""
        post_process = AsyncMock(return_value="")

        await tracker.run_build_process(python_spec(tmp_path, "import sys; sys.exit(1)"),
                                        post_process=post_process)

        post_process.assert_not_called()

    async def test_kill_during_post_process(self, tracker, tmp_path):
        """Test that killing a build while it post-processes cancels it."""
        marker = tmp_path / "exported.ipa"
        started = asyncio.Event()

        async def post_process(build):
            def on_start(process):
                build.attach(process)
                started.set()

            await ProcessUtils.run_command(
                [sys.executable, "-c",
                 "import sys, time; time.sleep(5); open(sys.argv[1], 'w').write('ipa')", str(marker)],
                on_start=on_start,
            )
            return f"IPA saved to: {marker}"

        task = asyncio.create_task(tracker.run_build_process(python_spec(tmp_path, "print('archived')"),
                                                             post_process=post_process))
        await asyncio.wait_for(started.wait(), timeout=5)
        assert tracker.kill_build("feature-x", BuildType.BUILD_ANDROID)

        result = await task
        assert not result.success
        assert result.error == "build_android was cancelled"
        assert "IPA saved to" not in result.output
        assert not marker.exists()
        assert tracker.active_builds == {}

    async def test_callback_errors_ignored(self, tracker, tmp_path):
        """Test that a failing progress callback does not break the build."""
        def on_progress(event):
            raise ValueError("ui gone")

        result = await tracker.run_build_process(python_spec(tmp_path, "print('x')"), on_progress)
        assert result.success


class TestRegistryQueries:
    """Test cases for registry queries with invalid or unknown labels."""

    @pytest.mark.parametrize("label", ["../x", "", "a/b"])
    def test_invalid_label_means_no_build(self, tracker, label):
        """Test that invalid labels never match a build."""
        tracker.active_builds[(label, BuildType.BUILD_IOS)] = ActiveBuild(label, BuildType.BUILD_IOS)

        assert not tracker.is_build_in_progress(label)
        assert tracker.get_active_build_info(label) is None
        assert tracker.get_build_output(label) == []
        assert not tracker.kill_build(label, BuildType.BUILD_IOS)
        assert tracker.kill_all_builds_for_label(label) == 0

    def test_unknown_label(self, tracker):
        """Test queries for a label without builds."""
        assert not tracker.is_build_in_progress("idle")
        assert not tracker.kill_build("idle", BuildType.POD_INSTALL)
        assert tracker.kill_all_builds_for_label("idle") == 0

    def test_kill_without_process(self, tracker):
        """Test killing a build that has not spawned its process yet."""
        build = ActiveBuild("feature-x", BuildType.POD_INSTALL)
        tracker.active_builds[("feature-x", BuildType.POD_INSTALL)] = build

        assert tracker.kill_build("feature-x", BuildType.POD_INSTALL)
        assert build.killed
        assert tracker.active_builds == {}

    def test_pre_conditions_see_running_pod_install(self, tracker, empty_config):
        """Test that a running pod install turns the pods check into a warning."""
        ios = empty_config.worktrees_dir / "feature-x" / "project.ios"
        ios.mkdir(parents=True)
        (ios / "Podfile").write_text("")
        tracker.active_builds[("feature-x", BuildType.POD_INSTALL)] = ActiveBuild("feature-x", BuildType.POD_INSTALL)

        result = tracker.check_pre_conditions("feature-x", Platform.IOS, "project.ios")

        pods = next(c for c in result.conditions if c.id == "ios_pods_installed")
        assert pods.status == CheckStatus.WARNING
        assert "currently running" in pods.message


@pytest.mark.asyncio
class TestPipelines:
    """Test cases for the platform pipelines."""

    async def test_unknown_fix_action(self, tracker):
        """Test that unknown fix actions are rejected."""
        result = await tracker.run_fix_action("feature-x", "build_infra_android")

        assert not result.success
        assert result.error == "Unknown fix action: build_infra_android"

    async def test_fix_action_dispatch(self, tracker):
        """Test that fix actions map to their runners."""
        with patch.object(tracker, 'run_pod_install', new=AsyncMock()) as run_pod_install:
            await tracker.run_fix_action("feature-x", "pod_install")

        run_pod_install.assert_awaited_once_with("feature-x", None)

    async def test_pod_install_command(self, tracker, empty_config):
        """Test the pod install invocation."""
        with patch.object(tracker, 'run_build_process', new=AsyncMock()) as run_build_process:
            await tracker.run_pod_install("feature-x")

        spec = run_build_process.await_args.args[0]
        assert spec.command == ["pod", "install"]
        assert spec.cwd == empty_config.worktrees_dir / "feature-x" / "project.ios"
        assert spec.build_type == BuildType.POD_INSTALL

    async def test_run_build_android(self, tracker, empty_config):
        """Test that the Android pipeline reports platform, repo and duration."""
        android = empty_config.worktrees_dir / "feature-x" / "project.android"
        android.mkdir(parents=True)
        gradlew = android / "gradlew"
        gradlew.write_text("#!/bin/sh\necho Configuring\necho BUILD SUCCESSFUL\n")
        gradlew.chmod(0o755)

        result = await tracker.run_build("feature-x", Platform.ANDROID)

        assert result.success
        assert result.platform == Platform.ANDROID
        assert result.repo == "project.android"
        assert result.duration >= 0
        assert "BUILD SUCCESSFUL" in result.output

    async def test_build_ios_uses_export(self, tracker):
        """Test that the iOS archive step is followed by the export step."""
        async def fake_run(spec, on_progress=None, post_process=None):
            extra = await post_process(ActiveBuild(label="feature-x", build_type=BuildType.BUILD_IOS))
            return BuildProcessResult(success=True, output=f"archive\n\n{extra}")

        with patch.object(tracker, 'run_build_process', side_effect=fake_run), \
                patch.object(tracker, 'export_ipa', new=AsyncMock(return_value="IPA saved to: x.ipa")):
            result = await tracker.build_ios("feature-x")

        assert result.success
        assert result.platform == Platform.IOS
        assert "IPA saved to" in result.output

    async def test_export_ipa(self, tracker, tmp_path):
        """Test exporting an archive and copying the IPA."""
        export_path = tmp_path / "build" / "export"
        export_path.mkdir(parents=True)
        (export_path / "Built.ipa").write_bytes(b"ipa")

        with patch('etz.build.ProcessUtils.run_command', new=AsyncMock(return_value=(0, "", ""))) as run:
            message = await tracker.export_ipa(tmp_path, tmp_path / "build" / "App.xcarchive", export_path)

        target = tmp_path / "Project-Staging-Debug.ipa"
        assert message == f"IPA saved to: {target}"
        assert target.read_bytes() == b"ipa"
        assert (tmp_path / "build" / "exportOptions.plist").exists()
        assert "-exportArchive" in run.await_args.args[0]

    async def test_export_ipa_failure(self, tracker, tmp_path):
        """Test that a failed export raises BuildError."""
        with patch('etz.build.ProcessUtils.run_command',
                   new=AsyncMock(return_value=(70, "", "error: no signing identity"))):
            with pytest.raises(BuildError, match="no signing identity"):
                await tracker.export_ipa(tmp_path, tmp_path / "a.xcarchive", tmp_path / "export")

    async def test_export_ipa_missing(self, tracker, tmp_path):
        """Test that an export without an IPA raises BuildError."""
        with patch('etz.build.ProcessUtils.run_command', new=AsyncMock(return_value=(0, "", ""))):
            with pytest.raises(BuildError, match="No IPA file found"):
                await tracker.export_ipa(tmp_path, tmp_path / "a.xcarchive", tmp_path / "export")

    async def test_export_ipa_killed(self, tracker, tmp_path):
        """Test that a killed export copies nothing."""
        export_path = tmp_path / "build" / "export"
        export_path.mkdir(parents=True)
        (export_path / "Built.ipa").write_bytes(b"ipa")
        build = ActiveBuild(label="feature-x", build_type=BuildType.BUILD_IOS)

        def killed_run(command, cwd=None, on_start=None):
            build.terminate()
            return 0, "", ""

        with patch('etz.build.ProcessUtils.run_command', new=AsyncMock(side_effect=killed_run)):
            with pytest.raises(BuildError, match="Export cancelled"):
                await tracker.export_ipa(tmp_path, tmp_path / "a.xcarchive", export_path, build)

        assert not (tmp_path / "Project-Staging-Debug.ipa").exists()


class TestProgressEstimators:
    """Test cases for the progress estimation strategies."""

    def test_pod_install(self):
        """Test pod install milestones."""
        assert estimate_pod_install_progress("Analyzing dependencies") == 20
        assert estimate_pod_install_progress("Installing Alamofire (5.0)") == 60
        assert estimate_pod_install_progress("Generating Pods project") == 80
        assert estimate_pod_install_progress("noise") == 10

    def test_infra_ios(self):
        """Test Gradle XCFramework milestones."""
        assert estimate_infra_ios_progress("> Task :shared:compileKotlinIosArm64") == 45
        assert estimate_infra_ios_progress("> Task :shared:linkReleaseStaticIosArm64") == 75
        assert estimate_infra_ios_progress("BUILD SUCCESSFUL in 2m") == 100
        assert estimate_infra_ios_progress("noise") == 5

    def test_android(self):
        """Test Gradle app milestones."""
        assert estimate_android_progress("Configuring project") == 20
        assert estimate_android_progress("Compiling Kotlin") == 50
        assert estimate_android_progress("BUILD SUCCESSFUL") == 100

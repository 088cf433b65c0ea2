"""Unit tests for UpdateOrchestrator."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, call

from fakes import FakeRebooter, FakeUpdater
from ota_agent.models.errors import JobError, TransportError, UpdaterError
from ota_agent.models.execution import ExecutionRecord
from ota_agent.models.status import SessionState
from ota_agent.services.orchestrator import UpdateOrchestrator


def _record(document, step=None):
    details = {"step": step} if step is not None else {}
    return ExecutionRecord.model_validate({
        "jobId": "j1",
        "status": "IN_PROGRESS" if step else "QUEUED",
        "statusDetails": details,
        "jobDocument": document,
        "versionNumber": 1,
        "executionNumber": 1,
    })


INSTALL = {"operation": "mender_install", "url": "https://x/fw.pkg"}
ROLLBACK = {"operation": "mender_rollback"}


@pytest.mark.unit
class TestUpdateOrchestrator:
    """State machine transitions against a mocked reporter."""

    @pytest.fixture
    def reporter(self):
        reporter = MagicMock()
        reporter.job_id = "j1"
        reporter.step = ""
        reporter.version_number = 1
        reporter.in_progress = AsyncMock(return_value=True)
        reporter.success = AsyncMock(return_value=True)
        reporter.fail = AsyncMock(return_value=True)
        reporter.reject = AsyncMock(return_value=True)
        reporter.terminate = AsyncMock()
        return reporter

    @pytest.fixture
    def rebooter(self):
        return FakeRebooter()

    def _orchestrator(self, updater, rebooter, timeout=1.0):
        return UpdateOrchestrator(updater, rebooter, install_timeout=timeout)

    def _steps(self, reporter):
        return [c.args[0]["step"] for c in reporter.in_progress.call_args_list]

    # --- validation ---

    @pytest.mark.asyncio
    async def test_missing_url_rejected(self, reporter, rebooter):
        updater = FakeUpdater()
        orchestrator = self._orchestrator(updater, rebooter)

        session = await orchestrator.process(_record({"operation": "mender_install"}), reporter)

        reporter.reject.assert_awaited_once_with(JobError.MISSING_URL, "missing url parameter")
        assert updater.calls == []
        assert session.state == SessionState.REJECTED
        reporter.terminate.assert_awaited()

    @pytest.mark.asyncio
    async def test_unknown_operation_rejected(self, reporter, rebooter):
        updater = FakeUpdater()
        orchestrator = self._orchestrator(updater, rebooter)

        await orchestrator.process(_record({"operation": "mender_insll"}), reporter)

        reporter.reject.assert_awaited_once()
        assert reporter.reject.call_args.args[0] == JobError.INVALID_OPERATION
        assert updater.calls == []
        reporter.in_progress.assert_not_awaited()

    # --- fresh install ---

    @pytest.mark.asyncio
    async def test_fresh_install_success_reboots(self, reporter, rebooter):
        # Arrange
        updater = FakeUpdater()
        orchestrator = self._orchestrator(updater, rebooter)

        # Act
        session = await orchestrator.process(_record(INSTALL), reporter)

        # Assert
        assert updater.calls == [("install", "https://x/fw.pkg")]
        assert not updater.called("commit")
        assert self._steps(reporter) == ["installing", "rebooting"]
        assert rebooter.calls == 1
        reporter.terminate.assert_awaited()
        reporter.success.assert_not_awaited()
        reporter.fail.assert_not_awaited()
        assert session.state == SessionState.REBOOTING
        assert session.operation == "install"
        assert session.reboot_task.done()

    @pytest.mark.asyncio
    async def test_installing_step_restarts_install(self, reporter, rebooter):
        updater = FakeUpdater()
        orchestrator = self._orchestrator(updater, rebooter)

        await orchestrator.process(_record(INSTALL, step="installing"), reporter)

        assert updater.called("install")
        assert not updater.called("commit")

    @pytest.mark.asyncio
    async def test_progress_lines_relayed(self, reporter, rebooter):
        updater = FakeUpdater(lines=["Installing Artifact of size 1024...", "100%"])
        orchestrator = self._orchestrator(updater, rebooter)

        await orchestrator.process(_record(INSTALL), reporter)

        assert reporter.in_progress.call_args_list == [
            call({"step": "installing"}),
            call({"step": "installing"}, note="Installing Artifact of size 1024..."),
            call({"step": "installing"}, note="100%"),
            call({"step": "rebooting"}),
        ]

    @pytest.mark.asyncio
    async def test_install_error_fails_without_reboot(self, reporter, rebooter):
        updater = FakeUpdater(install_error=UpdaterError("mender -install exited with code 1"))
        orchestrator = self._orchestrator(updater, rebooter)

        session = await orchestrator.process(_record(INSTALL), reporter)

        reporter.fail.assert_awaited_once_with(
            JobError.INSTALL_FAILED, "mender -install exited with code 1"
        )
        assert rebooter.calls == 0
        assert "rebooting" not in self._steps(reporter)
        assert session.state == SessionState.FAILED

    @pytest.mark.asyncio
    async def test_install_timeout(self, reporter, rebooter):
        updater = FakeUpdater(hang=True)
        orchestrator = self._orchestrator(updater, rebooter, timeout=0.05)

        session = await orchestrator.process(_record(INSTALL), reporter)

        reporter.fail.assert_awaited_once_with(JobError.INSTALL_TIMEOUT, "mender timed out")
        assert updater.install_cancelled
        assert rebooter.calls == 0
        assert session.state == SessionState.FAILED

    @pytest.mark.asyncio
    async def test_late_result_after_timeout_not_reported(self, reporter, rebooter):
        """An install that ignores cancellation cannot report after the deadline."""
        finished = asyncio.Event()

        class StubbornUpdater(FakeUpdater):
            async def install(self, url, progress):
                self.calls.append(("install", url))

                async def work():
                    await asyncio.sleep(0.1)
                    progress.put_nowait("late line")
                    finished.set()

                await asyncio.shield(work())

        orchestrator = self._orchestrator(StubbornUpdater(), rebooter, timeout=0.02)

        await orchestrator.process(_record(INSTALL), reporter)
        await asyncio.wait_for(finished.wait(), 1.0)
        await asyncio.sleep(0.01)

        reporter.fail.assert_awaited_once()
        assert reporter.fail.call_args.args[0] == JobError.INSTALL_TIMEOUT
        assert self._steps(reporter) == ["installing"]
        assert rebooter.calls == 0

    @pytest.mark.asyncio
    async def test_progress_lines_do_not_extend_deadline(self, reporter, rebooter):
        class ChattyUpdater(FakeUpdater):
            async def install(self, url, progress):
                while True:
                    progress.put_nowait("still working")
                    await asyncio.sleep(0.01)

        orchestrator = self._orchestrator(ChattyUpdater(), rebooter, timeout=0.1)

        await asyncio.wait_for(orchestrator.process(_record(INSTALL), reporter), 1.0)

        reporter.fail.assert_awaited_once()
        assert reporter.fail.call_args.args[0] == JobError.INSTALL_TIMEOUT

    @pytest.mark.asyncio
    async def test_finished_install_wins_over_queued_lines(self, reporter, rebooter):
        """Relaying queued lines after the install finished is not a timeout."""
        lines = [f"line {i}" for i in range(5)]

        async def slow_in_progress(details, note=None):
            await asyncio.sleep(0.05)
            return True

        reporter.in_progress = AsyncMock(side_effect=slow_in_progress)
        orchestrator = self._orchestrator(FakeUpdater(lines=lines), rebooter, timeout=0.15)

        session = await orchestrator.process(_record(INSTALL), reporter)

        reporter.fail.assert_not_awaited()
        notes = [c.kwargs.get("note") for c in reporter.in_progress.call_args_list]
        assert [n for n in notes if n is not None] == lines
        assert self._steps(reporter)[-1] == "rebooting"
        assert rebooter.calls == 1
        assert session.state == SessionState.REBOOTING

    @pytest.mark.asyncio
    async def test_timeout_reported_before_updater_stops(self, reporter, rebooter):
        loop = asyncio.get_running_loop()
        reported_at = []

        class SlowToStopUpdater(FakeUpdater):
            async def install(self, url, progress):
                try:
                    await asyncio.sleep(3600)
                except asyncio.CancelledError:
                    await asyncio.sleep(0.5)
                    self.install_cancelled = True
                    raise

        async def record_fail(code, message):
            reported_at.append(loop.time())
            return True

        reporter.fail = AsyncMock(side_effect=record_fail)
        updater = SlowToStopUpdater()
        orchestrator = self._orchestrator(updater, rebooter, timeout=0.05)

        started = loop.time()
        await asyncio.wait_for(orchestrator.process(_record(INSTALL), reporter), 2.0)

        reporter.fail.assert_awaited_once_with(JobError.INSTALL_TIMEOUT, "mender timed out")
        assert reported_at[0] - started < 0.3
        assert updater.install_cancelled
        reporter.terminate.assert_awaited()

    @pytest.mark.asyncio
    async def test_timeout_message_keeps_fractional_seconds(self, reporter, rebooter, caplog):
        orchestrator = self._orchestrator(FakeUpdater(hang=True), rebooter, timeout=0.05)

        with caplog.at_level("ERROR", logger="ota_agent.orchestrator"):
            await orchestrator.process(_record(INSTALL), reporter)

        assert "did not finish within 0.05s" in caplog.text

    @pytest.mark.asyncio
    async def test_reboot_failure_fails_job(self, reporter):
        rebooter = FakeRebooter(error=RuntimeError("Reboot failed: exit code 1"))
        orchestrator = self._orchestrator(FakeUpdater(), rebooter)

        session = await orchestrator.process(_record(INSTALL), reporter)

        reporter.fail.assert_awaited_once_with(
            JobError.REBOOT_FAILED, "Reboot failed: exit code 1"
        )
        assert session.state == SessionState.FAILED

    @pytest.mark.asyncio
    async def test_report_transport_error_does_not_stop_install(self, reporter, rebooter):
        reporter.in_progress = AsyncMock(side_effect=TransportError("not acknowledged"))
        updater = FakeUpdater()
        orchestrator = self._orchestrator(updater, rebooter)

        await orchestrator.process(_record(INSTALL), reporter)

        assert updater.called("install")
        assert rebooter.calls == 1

    # --- resume after reboot ---

    @pytest.mark.asyncio
    async def test_rebooting_step_commits(self, reporter, rebooter):
        updater = FakeUpdater()
        orchestrator = self._orchestrator(updater, rebooter)

        session = await orchestrator.process(_record(INSTALL, step="rebooting"), reporter)

        assert updater.calls == [("commit",)]
        assert self._steps(reporter) == ["rebooted"]
        reporter.success.assert_awaited_once_with({"step": "committed"})
        assert session.state == SessionState.COMMITTED
        assert rebooter.calls == 0

    @pytest.mark.asyncio
    async def test_rebooted_step_commits(self, reporter, rebooter):
        updater = FakeUpdater()
        orchestrator = self._orchestrator(updater, rebooter)

        await orchestrator.process(_record(INSTALL, step="rebooted"), reporter)

        assert updater.calls == [("commit",)]

    @pytest.mark.asyncio
    async def test_commit_failure(self, reporter, rebooter):
        updater = FakeUpdater(commit_error=UpdaterError("exit code 2"))
        orchestrator = self._orchestrator(updater, rebooter)

        session = await orchestrator.process(_record(INSTALL, step="rebooting"), reporter)

        reporter.fail.assert_awaited_once()
        assert reporter.fail.call_args.args[0] == JobError.COMMIT_FAILED
        assert not updater.called("rollback")
        reporter.success.assert_not_awaited()
        assert session.state == SessionState.FAILED

    # --- rollback ---

    @pytest.mark.asyncio
    async def test_rollback_success(self, reporter, rebooter):
        updater = FakeUpdater()
        orchestrator = self._orchestrator(updater, rebooter)

        session = await orchestrator.process(_record(ROLLBACK, step="rebooting"), reporter)

        assert updater.calls == [("rollback",)]
        reporter.success.assert_awaited_once_with({"step": "rolled_back"})
        assert session.state == SessionState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_rollback_failure(self, reporter, rebooter):
        updater = FakeUpdater(rollback_error=UpdaterError("no previous image"))
        orchestrator = self._orchestrator(updater, rebooter)

        await orchestrator.process(_record(ROLLBACK), reporter)

        reporter.fail.assert_awaited_once()
        assert reporter.fail.call_args.args[0] == JobError.ROLLBACK_FAILED
        reporter.success.assert_not_awaited()

    # --- sessions ---

    @pytest.mark.asyncio
    async def test_session_registered(self, reporter, rebooter):
        orchestrator = self._orchestrator(FakeUpdater(), rebooter)

        session = await orchestrator.process(_record(ROLLBACK), reporter)

        assert orchestrator.sessions["j1"] is session
        assert session.is_finished
        data = session.to_dict()
        assert data["job_id"] == "j1"
        assert data["state"] == "rolled_back"

    @pytest.mark.asyncio
    async def test_finished_sessions_are_capped(self, reporter, rebooter):
        orchestrator = UpdateOrchestrator(FakeUpdater(), rebooter, max_sessions=2)

        for job_id in ("j1", "j2", "j3"):
            reporter.job_id = job_id
            await orchestrator.process(_record(ROLLBACK), reporter)

        assert list(orchestrator.sessions) == ["j2", "j3"]

    @pytest.mark.asyncio
    async def test_rerun_job_moves_to_newest(self, reporter, rebooter):
        orchestrator = UpdateOrchestrator(FakeUpdater(), rebooter, max_sessions=2)

        for job_id in ("j1", "j2", "j1", "j3"):
            reporter.job_id = job_id
            await orchestrator.process(_record(ROLLBACK), reporter)

        assert list(orchestrator.sessions) == ["j1", "j3"]

    @pytest.mark.asyncio
    async def test_cancelled_session_cancels_install(self, reporter, rebooter):
        updater = FakeUpdater(hang=True)
        orchestrator = self._orchestrator(updater, rebooter, timeout=60)

        task = asyncio.create_task(orchestrator.process(_record(INSTALL), reporter))
        await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert updater.install_cancelled
        reporter.fail.assert_not_awaited()
        reporter.terminate.assert_awaited()

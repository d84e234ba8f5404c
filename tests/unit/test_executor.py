"""
Unit tests for the job orchestrator (snaparchive/backup/executor.py).

Tests JobOrchestrator for running complete archival workflows, and the
execute_backup_job / run_backup_set entry points.
"""

import os
from unittest.mock import MagicMock

import pytest

from snaparchive.backup.errors import SnapshotError
from snaparchive.backup.executor import JobOrchestrator, execute_backup_job, run_backup_set
from snaparchive.backup.process import ProcessResult
from snaparchive.backup.snapshot import ShadowInventory, SnapshotCoordinator
from snaparchive.models import BackupSet, JobStatus, SettingsLayer, SnapshotState


class ScriptedTools:
    """
    Stands in for the archiver and hook interpreters.

    Archive creation writes the archive file so later steps can read it.
    """

    def __init__(self, create_codes=(0,), test_codes=(0,), hook_code=0, fail_archives_named=None):
        self.create_codes = list(create_codes)
        self.test_codes = list(test_codes)
        self.hook_code = hook_code
        self.fail_archives_named = fail_archives_named
        self.creates = []
        self.tests = []
        self.hooks = []
        self.password_contents = []

    def __call__(self, args):
        verb = args[1] if len(args) > 1 else None

        if verb == 'a':
            self.creates.append(args)
            for arg in args:
                if arg.startswith('-p@'):
                    with open(arg[3:], encoding='utf-8') as f:
                        self.password_contents.append(f.read())
            archive_path = args[-2]
            code = self.create_codes[min(len(self.creates) - 1, len(self.create_codes) - 1)]
            if self.fail_archives_named and self.fail_archives_named in os.path.basename(archive_path):
                code = 2
            if code in (0, 1):
                with open(archive_path, 'wb') as f:
                    f.write(b'7z-archive-content')
            return ProcessResult(returncode=code)

        if verb == 't':
            self.tests.append(args)
            return ProcessResult(returncode=self.test_codes[min(len(self.tests) - 1, len(self.test_codes) - 1)])

        self.hooks.append(args)
        return ProcessResult(returncode=self.hook_code, stdout='hook ran\n')


@pytest.fixture
def tools():
    return ScriptedTools()


@pytest.fixture
def run_job(config_document, make_runner):
    """Run a job of the sample document with scripted tools."""
    def _run(tools, job_name='docs', overrides=None, document=None, **kwargs):
        runner = make_runner(on_call=tools)
        orchestrator = JobOrchestrator(
            document or config_document,
            job_name,
            SettingsLayer.from_dict(overrides) if overrides else None,
            runner=runner,
            **kwargs
        )
        return orchestrator.execute()

    return _run


@pytest.fixture
def hook_scripts(tmp_path):
    """Hook script files for every stage."""
    scripts = {}
    for stage in ('pre_backup', 'on_success', 'on_failure', 'always'):
        path = tmp_path / f'{stage}.py'
        path.write_text('print("hook")\n')
        scripts[f'hook_{stage}'] = str(path)
    return scripts


def archives_in(directory, base_name='Docs'):
    return sorted(n for n in os.listdir(directory) if n.startswith(base_name) and n.endswith('.7z'))


class TestJobOrchestratorWorkflow:
    """Test the main archival workflow."""

    def test_successful_run_with_retention(self, run_job, tools, archive_dir, existing_archives):
        """Test a run with 4 old archives and retention 3 deletes 2 and creates 1."""
        old = existing_archives(count=4)

        result = run_job(tools)

        assert result.status == JobStatus.SUCCESS
        assert result.error_message is None
        assert len(result.retention_result.deleted) == 2
        assert not old[0].exists()
        assert not old[1].exists()
        assert old[2].exists()
        assert old[3].exists()
        assert os.path.exists(result.archive_path)
        assert len(archives_in(archive_dir)) == 3
        assert result.archive_result.attempts == 1
        assert result.started_at is not None
        assert result.completed_at is not None

    def test_archive_name_and_location(self, run_job, tools, archive_dir):
        """Test the archive is written to the destination with the dated name."""
        result = run_job(tools)

        assert os.path.dirname(result.archive_path) == str(archive_dir)
        name = os.path.basename(result.archive_path)
        assert name.startswith('Docs [')
        assert name.endswith('].7z')

    def test_archiver_warnings_exit(self, run_job):
        """Test archiver exit code 1 gives WARNINGS."""
        result = run_job(ScriptedTools(create_codes=[1]))

        assert result.status == JobStatus.WARNINGS
        assert result.archive_result.has_warnings

    def test_archiver_failure_after_retries(self, run_job, hook_scripts):
        """Test exhausted archiver retries fail the job and run the failure hook."""
        tools = ScriptedTools(create_codes=[2])

        result = run_job(tools, overrides={'max_retry_attempts': 2, **hook_scripts})

        assert result.status == JobStatus.FAILURE
        assert 'exit code 2' in result.error_message
        assert result.archive_result.attempts == 2
        assert len(tools.creates) == 2
        assert [h.stage for h in result.hooks] == ['pre_backup', 'on_failure', 'always']

    def test_test_failure_gives_warnings(self, run_job):
        """Test a failed integrity test downgrades the job to WARNINGS."""
        tools = ScriptedTools(test_codes=[2])

        result = run_job(tools, overrides={'test_archive_after_creation': True, 'max_retry_attempts': 1})

        assert result.status == JobStatus.WARNINGS
        assert result.test_result.exit_code == 2
        assert len(tools.tests) == 1
        assert any('test failed' in w for w in result.warnings)

    def test_test_success(self, run_job, tools):
        """Test a passing integrity test keeps SUCCESS."""
        result = run_job(tools, overrides={'test_archive_after_creation': True})

        assert result.status == JobStatus.SUCCESS
        assert tools.tests[0][1:3] == ['t', result.archive_path]

    def test_checksum_written(self, run_job, tools):
        """Test a checksum sidecar is written next to the archive."""
        result = run_job(tools, overrides={'generate_checksum': True})

        assert result.checksum_path == result.archive_path + '.sha256'
        assert os.path.exists(result.checksum_path)

    def test_dry_run(self, run_job, tools, archive_dir, existing_archives):
        """Test a dry run neither creates nor deletes anything."""
        old = existing_archives(count=4)

        result = run_job(tools, dry_run=True)

        assert result.status == JobStatus.SUCCESS
        assert tools.creates == []
        assert all(p.exists() for p in old)
        assert result.retention_result.simulated is True
        assert len(result.retention_result.deleted) == 2
        assert not os.path.exists(result.archive_path)

    def test_logs_are_collected(self, run_job, tools):
        """Test log lines of the run are attached to the result."""
        result = run_job(tools)

        assert any('Starting job: docs' in line for line in result.logs)
        assert any('Job finished with status SUCCESS' in line for line in result.logs)


class TestJobOrchestratorFailures:
    """Test fatal and recoverable failure handling."""

    def test_configuration_failure(self, run_job, tools, config_document, hook_scripts):
        """Test an unresolvable configuration fails before any step runs."""
        config_document.defaults.destination_dir = None
        for key, value in hook_scripts.items():
            setattr(config_document.jobs['docs'], key, value)

        result = run_job(tools)

        assert result.status == JobStatus.FAILURE
        assert 'No destination directory' in result.error_message
        assert tools.creates == []
        assert tools.hooks == []

    def test_unknown_job(self, run_job, tools):
        """Test running an undefined job fails with a configuration error."""
        result = run_job(tools, job_name='nope')

        assert result.status == JobStatus.FAILURE
        assert 'not defined' in result.error_message

    def test_missing_password_fails(self, run_job, tools, monkeypatch):
        """Test encryption without an available password fails the job."""
        monkeypatch.delenv('SNAPARCHIVE_TEST_PW', raising=False)

        result = run_job(tools, overrides={
            'encrypt_archive': True, 'password_method': 'env', 'password_env_var': 'SNAPARCHIVE_TEST_PW'
        })

        assert result.status == JobStatus.FAILURE
        assert tools.creates == []

    def test_password_file_removed_after_run(self, run_job, tools):
        """Test the password file reaches the archiver and is removed afterwards."""
        result = run_job(tools, overrides={
            'encrypt_archive': True, 'password_method': 'plaintext', 'archive_password': 's3cret'
        })

        assert result.status == JobStatus.SUCCESS
        assert tools.password_contents == ['s3cret']
        password_arg = next(a for a in tools.creates[0] if a.startswith('-p@'))
        assert not os.path.exists(password_arg[3:])

    def test_password_file_written_to_temp_dir(self, run_job, tools, tmp_path):
        """Test the configured temp directory holds the password file."""
        temp_dir = tmp_path / 'private-temp'
        temp_dir.mkdir()

        result = run_job(tools, overrides={
            'encrypt_archive': True, 'password_method': 'plaintext', 'archive_password': 's3cret'
        }, temp_dir=str(temp_dir))

        assert result.status == JobStatus.SUCCESS
        password_arg = next(a for a in tools.creates[0] if a.startswith('-p@'))
        assert os.path.dirname(password_arg[3:]) == str(temp_dir)

    def test_password_file_removed_after_failure(self, run_job):
        """Test the password file is removed when the archiver fails."""
        tools = ScriptedTools(create_codes=[2])

        result = run_job(tools, overrides={
            'encrypt_archive': True, 'password_method': 'plaintext', 'archive_password': 's3cret',
            'max_retry_attempts': 1
        })

        assert result.status == JobStatus.FAILURE
        password_arg = next(a for a in tools.creates[0] if a.startswith('-p@'))
        assert not os.path.exists(password_arg[3:])

    def test_low_space_fatal(self, run_job, tools):
        """Test insufficient free space aborts when exit_on_low_space is set."""
        result = run_job(tools, overrides={'min_free_space_gb': 10 ** 9, 'exit_on_low_space': True})

        assert result.status == JobStatus.FAILURE
        assert 'GB free' in result.error_message
        assert tools.creates == []

    def test_low_space_warning(self, run_job, tools):
        """Test insufficient free space only warns by default."""
        result = run_job(tools, overrides={'min_free_space_gb': 10 ** 9})

        assert result.status == JobStatus.WARNINGS
        assert len(tools.creates) == 1

    def test_retention_failure_gives_warnings(self, run_job, tools):
        """Test failed deletions downgrade to WARNINGS without aborting."""
        enforcer = MagicMock()
        enforcer.enforce.return_value.failed = ['D:\\Backups\\old.7z']
        enforcer.enforce.return_value.deleted = []

        result = run_job(tools, retention_enforcer=enforcer)

        assert result.status == JobStatus.WARNINGS
        assert len(tools.creates) == 1


class TestJobOrchestratorSnapshots:
    """Test snapshot integration."""

    def _coordinator(self, snapshot_error=None):
        coordinator = MagicMock()
        session = MagicMock()
        session.state = SnapshotState.IDLE
        coordinator.begin.return_value = session
        if snapshot_error:
            coordinator.snapshot.side_effect = snapshot_error
        coordinator.resolve_paths.side_effect = lambda s, paths: [f'\\\\?\\SNAP{p[2:]}' for p in paths]
        return coordinator

    def test_snapshot_paths_are_archived(self, run_job, tools):
        """Test the archiver receives snapshot paths and the snapshot is released."""
        coordinator = self._coordinator()

        result = run_job(tools, overrides={'enable_snapshot': True}, snapshot_coordinator=coordinator)

        assert result.status == JobStatus.SUCCESS
        assert result.snapshot_used is True
        assert tools.creates[0][-1].startswith('\\\\?\\SNAP')
        coordinator.release.assert_called_once()

    def test_snapshot_failure_falls_back_to_live_paths(self, run_job, tools, config_document):
        """Test a snapshot failure is recoverable: live paths are archived and WARNINGS reported."""
        coordinator = self._coordinator(SnapshotError('Timed out waiting for snapshot of D:'))
        source = config_document.jobs['docs'].source_paths[0]

        result = run_job(tools, overrides={'enable_snapshot': True}, snapshot_coordinator=coordinator)

        assert result.status == JobStatus.WARNINGS
        assert result.snapshot_used is False
        assert tools.creates[0][-1] == source
        assert any('Timed out' in w for w in result.warnings)
        coordinator.release.assert_called_once()

    def test_malformed_inventory_falls_back_to_live_paths(self, run_job, tools, tmp_path, fake_clock, claim_registry):
        """Test an inventory fault only downgrades the job and archives the live paths."""
        class BrokenInventory(ShadowInventory):
            def list_shadows(self):
                raise KeyError('Id')

        snapshot_tool = MagicMock()
        snapshot_tool.run.return_value = ProcessResult(returncode=0)
        coordinator = SnapshotCoordinator(
            runner=snapshot_tool,
            inventory=BrokenInventory(),
            registry=claim_registry,
            clock=fake_clock.monotonic,
            sleep=fake_clock.sleep,
            temp_dir=str(tmp_path)
        )

        result = run_job(
            tools,
            overrides={'enable_snapshot': True, 'source_paths': ['C:\\Data']},
            snapshot_coordinator=coordinator
        )

        assert result.status == JobStatus.WARNINGS
        assert result.snapshot_used is False
        assert tools.creates[0][-1] == 'C:\\Data'
        assert any('Snapshot' in w for w in result.warnings)

    def test_default_coordinator_uses_temp_dir(self, config_document, tmp_path):
        """Test the snapshot scripts go to the orchestrator's temp directory."""
        orchestrator = JobOrchestrator(config_document, 'docs', temp_dir=str(tmp_path))

        assert orchestrator.snapshot_coordinator.temp_dir == str(tmp_path)

    def test_snapshot_released_on_archiver_failure(self, run_job):
        """Test snapshots are released even when the archiver fails."""
        coordinator = self._coordinator()

        result = run_job(
            ScriptedTools(create_codes=[2]),
            overrides={'enable_snapshot': True, 'max_retry_attempts': 1},
            snapshot_coordinator=coordinator
        )

        assert result.status == JobStatus.FAILURE
        coordinator.release.assert_called_once()

    def test_snapshot_skipped_in_dry_run(self, run_job, tools):
        """Test dry runs do not create snapshots."""
        coordinator = self._coordinator()

        run_job(tools, overrides={'enable_snapshot': True}, snapshot_coordinator=coordinator, dry_run=True)

        coordinator.begin.assert_not_called()
        coordinator.release.assert_not_called()


class TestJobOrchestratorHooks:
    """Test hook invocation."""

    def test_hook_order_on_success(self, run_job, tools, hook_scripts):
        """Test pre, success and always hooks run in order."""
        result = run_job(tools, overrides=hook_scripts)

        assert result.status == JobStatus.SUCCESS
        assert [h.stage for h in result.hooks] == ['pre_backup', 'on_success', 'always']
        assert '--status' not in tools.hooks[0]
        assert tools.hooks[1][tools.hooks[1].index('--status') + 1] == 'SUCCESS'

    def test_hook_failure_does_not_abort(self, run_job, hook_scripts):
        """Test a failing hook only adds a warning."""
        tools = ScriptedTools(hook_code=3)

        result = run_job(tools, overrides={'hook_pre_backup': hook_scripts['hook_pre_backup']})

        assert result.status == JobStatus.WARNINGS
        assert len(tools.creates) == 1
        assert result.hooks[0].status == 'Failure'

    @pytest.mark.parametrize("stage", ['on_success', 'always'])
    def test_status_hook_failure_downgrades_success(self, run_job, hook_scripts, stage):
        """Test a failing hook after the workflow still turns SUCCESS into WARNINGS."""
        tools = ScriptedTools(hook_code=3)

        result = run_job(tools, overrides={f'hook_{stage}': hook_scripts[f'hook_{stage}']})

        assert result.status == JobStatus.WARNINGS
        assert result.hooks[0].stage == stage
        assert result.hooks[0].status == 'Failure'
        assert tools.hooks[0][tools.hooks[0].index('--status') + 1] == 'SUCCESS'
        assert any(stage in w for w in result.warnings)

    def test_failure_hook_keeps_failure(self, run_job, hook_scripts):
        """Test a failing hook never changes a FAILURE result."""
        tools = ScriptedTools(create_codes=(2,), hook_code=3)

        result = run_job(tools, overrides={'retry_enabled': False, 'hook_on_failure': hook_scripts['hook_on_failure']})

        assert result.status == JobStatus.FAILURE
        assert result.hooks[0].status == 'Failure'


class TestJobOrchestratorTargets:
    """Test transfers to backup targets."""

    def test_local_target_transfer(self, run_job, tools, config_document, tmp_path):
        """Test the archive is copied to a local target."""
        copy_dir = tmp_path / 'copy'
        config_document.targets['nas'] = {'type': 'local', 'path': str(copy_dir)}

        result = run_job(tools, overrides={'targets': ['nas']})

        assert result.status == JobStatus.SUCCESS
        assert result.transfers[0].succeeded
        assert os.path.exists(result.transfers[0].location)

    def test_failed_target_gives_warnings(self, run_job, tools, config_document, tmp_path):
        """Test a failing target transfer downgrades to WARNINGS."""
        blocker = tmp_path / 'not-a-dir'
        blocker.write_text('file in the way')
        config_document.targets['nas'] = {'type': 'local', 'path': str(blocker / 'sub')}

        result = run_job(tools, overrides={'targets': ['nas']})

        assert result.status == JobStatus.WARNINGS
        assert result.transfers[0].succeeded is False
        assert os.path.exists(result.archive_path)


class TestExecuteBackupJob:
    """Test execute_backup_job() entry point."""

    def test_runs_job(self, config_document, make_runner, tools):
        """Test a job is executed by name."""
        result = execute_backup_job(config_document, 'docs', runner=make_runner(on_call=tools))

        assert result.job_name == 'docs'
        assert result.status == JobStatus.SUCCESS

    def test_job_not_found(self, config_document):
        """Test ValueError for an unknown job."""
        with pytest.raises(ValueError, match='not found'):
            execute_backup_job(config_document, 'nope')

    def test_disabled_job(self, config_document, make_runner, tools):
        """Test disabled jobs are refused unless explicitly allowed."""
        config_document.jobs['docs'].enabled = False

        with pytest.raises(ValueError, match='disabled'):
            execute_backup_job(config_document, 'docs')

        result = execute_backup_job(
            config_document, 'docs', allow_disabled=True, runner=make_runner(on_call=tools)
        )
        assert result.status == JobStatus.SUCCESS

    def test_overrides_apply(self, config_document, make_runner, tools):
        """Test invocation overrides reach the job."""
        result = execute_backup_job(
            config_document, 'docs',
            overrides=SettingsLayer(archive_name='Override'),
            runner=make_runner(on_call=tools)
        )

        assert os.path.basename(result.archive_path).startswith('Override [')


class TestRunBackupSet:
    """Test run_backup_set() sequencing."""

    def test_runs_all_jobs_in_order(self, config_document, make_runner, tools):
        """Test every job of the set runs in order."""
        results = run_backup_set(config_document, 'nightly', runner=make_runner(on_call=tools))

        assert [r.job_name for r in results] == ['docs', 'photos']
        assert all(r.status == JobStatus.SUCCESS for r in results)
        assert results[0].session_id != results[1].session_id

    def test_stop_on_error(self, config_document, make_runner):
        """Test remaining jobs are skipped after a failure with on_error 'stop'."""
        tools = ScriptedTools(fail_archives_named='Docs')
        config_document.defaults.max_retry_attempts = 1

        results = run_backup_set(config_document, 'nightly', runner=make_runner(on_call=tools))

        assert [r.job_name for r in results] == ['docs']
        assert results[0].status == JobStatus.FAILURE

    def test_continue_on_error(self, config_document, make_runner):
        """Test on_error 'continue' runs the remaining jobs."""
        tools = ScriptedTools(fail_archives_named='Docs')
        config_document.defaults.max_retry_attempts = 1
        config_document.sets['nightly'].on_error = 'continue'

        results = run_backup_set(config_document, 'nightly', runner=make_runner(on_call=tools))

        assert [r.status for r in results] == [JobStatus.FAILURE, JobStatus.SUCCESS]

    def test_unknown_job_in_set(self, config_document, make_runner, tools):
        """Test an undefined job in a set is reported as a failed result."""
        config_document.sets['broken'] = BackupSet(name='broken', jobs=['missing', 'docs'], on_error='continue')

        results = run_backup_set(config_document, 'broken', runner=make_runner(on_call=tools))

        assert results[0].status == JobStatus.FAILURE
        assert 'not found' in results[0].error_message
        assert results[1].status == JobStatus.SUCCESS

    def test_unknown_set(self, config_document):
        """Test ValueError for an undefined set."""
        with pytest.raises(ValueError, match='not found'):
            run_backup_set(config_document, 'nope')

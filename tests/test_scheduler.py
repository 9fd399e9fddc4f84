"""Tests for scheduling job instances."""

import threading

import pytest

from conftest import requires_bash
from matrixci.environment import Environment
from matrixci.errors import CancellationError, ConfigError
from matrixci.executor import StepExecutor
from matrixci.model import InstanceState, StepResult, StepStatus, Verdict
from matrixci.scheduler import JobScheduler, target_os


class RecordingExecutor(StepExecutor):
    """Pretends to run steps; `run:` text picks the outcome."""

    OUTCOMES = {"fail": StepStatus.FAILED, "error": StepStatus.ERRORED}

    def __init__(self, trigger, on_run=None):
        super().__init__(trigger=trigger)
        self.calls = []
        self.envs = {}
        self.on_run = on_run or {}
        self._lock = threading.Lock()

    def run(self, step, env, axes, *, workspace, job_status="success", cancel=None, timeout=None):
        if not self.should_run(step, env, axes, job_status=job_status):
            return StepResult(step=step.display_name, status=StepStatus.SKIPPED)
        with self._lock:
            self.calls.append(step.run)
            self.envs[step.run] = dict(env)
        if step.run in self.on_run:
            self.on_run[step.run]()
        status = self.OUTCOMES.get(step.run, StepStatus.SUCCEEDED)
        return StepResult(step=step.display_name, status=status)


@pytest.fixture
def recorder(trigger):
    return RecordingExecutor(trigger)


@pytest.fixture
def make_scheduler(console):
    def build(executor, **kwargs):
        kwargs.setdefault("base_env", Environment({}))
        kwargs.setdefault("max_workers", 2)
        return JobScheduler(executor, console=console, **kwargs)

    return build


def test_first_failure_stops_the_job(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          build:
            steps:
              - run: fail
              - run: second
              - run: third
        """
    )
    scheduler = make_scheduler(recorder)
    verdicts = scheduler.run_all(wf.jobs)

    assert recorder.calls == ["fail"]
    assert verdicts == {"build": Verdict.FAILED}
    inst = scheduler.instances[0]
    assert [r.status for r in inst.results] == [StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.SKIPPED]
    assert inst.reason == "step 'fail' failed"


def test_errored_step_errors_the_job(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          build:
            steps:
              - run: error
              - run: never
        """
    )
    assert make_scheduler(recorder).run_all(wf.jobs) == {"build": Verdict.ERRORED}
    assert recorder.calls == ["error"]


def test_cleanup_step_runs_after_failure(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          build:
            steps:
              - run: fail
              - run: skipped
              - if: always()
                run: cleanup
        """
    )
    verdicts = make_scheduler(recorder).run_all(wf.jobs)
    assert recorder.calls == ["fail", "cleanup"]
    assert verdicts == {"build": Verdict.FAILED}


def test_continue_on_error(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          build:
            steps:
              - run: fail
                continue-on-error: true
              - run: after
        """
    )
    verdicts = make_scheduler(recorder).run_all(wf.jobs)
    assert recorder.calls == ["fail", "after"]
    assert verdicts == {"build": Verdict.SUCCEEDED}


def test_jobs_are_isolated(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          one:
            steps:
              - run: fail
          two:
            steps:
              - run: two
          three:
            steps:
              - run: three
        """
    )
    verdicts = make_scheduler(recorder).run_all(wf.jobs)

    assert verdicts == {"one": Verdict.FAILED, "two": Verdict.SUCCEEDED, "three": Verdict.SUCCEEDED}
    assert sorted(recorder.calls) == ["fail", "three", "two"]


def test_matrix_instances_are_isolated(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          tests:
            strategy:
              matrix:
                mode: [fail, release]
            steps:
              - run: ${{ matrix.mode }}
              - run: after-${{ matrix.mode }}
        """
    )
    verdicts = make_scheduler(recorder).run_all(wf.jobs)

    assert verdicts == {"tests[mode=fail]": Verdict.FAILED, "tests[mode=release]": Verdict.SUCCEEDED}
    assert "after-release" in recorder.calls
    assert "after-fail" not in recorder.calls


def test_instances_get_their_own_environment(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        env:
          LEVEL: workflow
        jobs:
          tests:
            strategy:
              matrix:
                mode: [debug, release]
            env:
              MODE: ${{ matrix.mode }}
              LEVEL: job
            steps:
              - run: step-${{ matrix.mode }}
                env:
                  LEVEL: step-${MODE}
        """
    )
    scheduler = make_scheduler(recorder, workflow_env=wf.env)
    scheduler.run_all(wf.jobs)

    debug, release = recorder.envs["step-debug"], recorder.envs["step-release"]
    assert debug["MODE"] == "debug"
    assert release["MODE"] == "release"
    assert debug["LEVEL"] == "step-debug"
    assert debug["CI_JOB"] == "tests"
    assert debug["CI_WORKSPACE"] != release["CI_WORKSPACE"]


def test_failed_need_skips_dependents(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          build:
            steps:
              - run: fail
          deploy:
            needs: build
            steps:
              - run: deploy
          report:
            needs: [build]
            if: always()
            steps:
              - run: report
          lint:
            steps:
              - run: lint
        """
    )
    scheduler = make_scheduler(recorder)
    verdicts = scheduler.run_all(wf.jobs)

    assert verdicts["deploy"] == Verdict.SKIPPED
    assert verdicts["report"] == Verdict.SUCCEEDED
    assert verdicts["lint"] == Verdict.SUCCEEDED
    assert "deploy" not in recorder.calls
    deploy = next(i for i in scheduler.instances if i.id == "deploy")
    assert deploy.reason == "a needed job did not succeed"


def test_needs_wait_for_every_instance(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          tests:
            strategy:
              matrix:
                mode: [debug, release]
            steps:
              - run: test-${{ matrix.mode }}
          publish:
            needs: tests
            steps:
              - run: publish
        """
    )
    make_scheduler(recorder).run_all(wf.jobs)
    assert recorder.calls[-1] == "publish"


def test_false_job_guard_skips(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          release:
            if: github.event_name == 'pull_request'
            steps:
              - run: release
        """
    )
    scheduler = make_scheduler(recorder)
    assert scheduler.run_all(wf.jobs) == {"release": Verdict.SKIPPED}
    assert scheduler.instances[0].reason == "condition is false"
    assert recorder.calls == []


def test_cancellation_errors_running_and_pending_instances(workflow_from, trigger, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          quick:
            steps:
              - run: quick
          slow:
            steps:
              - run: slow
          later:
            steps:
              - run: later
        """
    )

    def cancel_mid_step():
        scheduler.cancel.cancel("cancelled by test")
        raise CancellationError(step="slow", reason="cancelled by test")

    executor = RecordingExecutor(trigger, on_run={"slow": cancel_mid_step})
    scheduler = make_scheduler(executor, max_workers=1)
    verdicts = scheduler.run_all(wf.jobs)

    assert verdicts == {"quick": Verdict.SUCCEEDED, "slow": Verdict.ERRORED, "later": Verdict.ERRORED}
    assert executor.calls == ["quick", "slow"]
    later = next(i for i in scheduler.instances if i.id == "later")
    assert later.reason == "cancelled by test before start"
    assert all(i.state.terminal for i in scheduler.instances)


def test_stages_follow_needs(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          a:
            steps:
              - run: a
          b:
            needs: a
            steps:
              - run: b
          c:
            steps:
              - run: c
        """
    )
    scheduler = make_scheduler(recorder)
    scheduler.prepare(wf.jobs)
    assert [[i.id for i in stage] for stage in scheduler.stages()] == [["a", "c"], ["b"]]


def test_preview_lists_guarded_steps(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          tests:
            strategy:
              matrix:
                mode: [debug, release]
            steps:
              - if: matrix.mode == 'release'
                run: release-only
        """
    )
    scheduler = make_scheduler(recorder)
    scheduler.prepare(wf.jobs)
    assert scheduler.preview() == {("tests[mode=debug]", 0): "condition is false"}


def test_undefined_variable_is_reported_before_running(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          build:
            env:
              URL: ${MISSING_HOST}/api
            steps:
              - run: build
        """
    )
    with pytest.raises(ConfigError) as exc_info:
        make_scheduler(recorder).run_all(wf.jobs)
    assert exc_info.value.source == "jobs.build.env"
    assert recorder.calls == []


def test_instance_states_are_terminal_after_run(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          build:
            steps:
              - run: build
        """
    )
    scheduler = make_scheduler(recorder)
    scheduler.run_all(wf.jobs)
    inst = scheduler.instances[0]
    assert inst.state == InstanceState.SUCCEEDED
    assert inst.duration is not None
    with pytest.raises(RuntimeError):
        inst.start()


@requires_bash
def test_real_steps_share_the_instance_workspace(workflow_from, trigger, base_env, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          build:
            steps:
              - run: echo artifact > out.txt
              - run: test "$(cat out.txt)" = artifact
        """
    )
    executor = StepExecutor(trigger=trigger)
    verdicts = make_scheduler(executor, base_env=base_env).run_all(wf.jobs)
    assert verdicts == {"build": Verdict.SUCCEEDED}


def test_target_os():
    assert target_os("ubuntu-latest") == "Linux"
    assert target_os("macos-13") == "macOS"
    assert target_os("windows-2022") == "Windows"
    assert target_os("self-hosted") is None


def test_declared_env_overrides_runner_variables(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        env:
          CI: "false"
        jobs:
          build:
            env:
              RUNNER_OS: custom
            steps:
              - run: build
        """
    )
    make_scheduler(recorder, workflow_env=wf.env).run_all(wf.jobs)
    env = recorder.envs["build"]
    assert env["CI"] == "false"
    assert env["RUNNER_OS"] == "custom"
    assert env["CI_JOB"] == "build"


def test_job_guard_error_errors_only_that_instance(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          broken:
            if: format(env.FMT, 'x') == 'y'
            env:
              FMT: '{1}'
            steps:
              - run: broken
          fine:
            steps:
              - run: fine
        """
    )
    scheduler = make_scheduler(recorder)
    verdicts = scheduler.run_all(wf.jobs)

    assert verdicts == {"broken": Verdict.ERRORED, "fine": Verdict.SUCCEEDED}
    assert recorder.calls == ["fine"]
    broken = next(i for i in scheduler.instances if i.id == "broken")
    assert broken.reason.startswith("if: ")
    assert "broken" not in scheduler.neutral


def test_guard_skip_is_neutral_for_dependents(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          release:
            if: github.event_name == 'pull_request'
            steps:
              - run: release
          announce:
            needs: release
            steps:
              - run: announce
          report:
            needs: release
            if: always()
            steps:
              - run: report
        """
    )
    scheduler = make_scheduler(recorder)
    verdicts = scheduler.run_all(wf.jobs)

    assert verdicts == {"release": Verdict.SKIPPED, "announce": Verdict.SKIPPED, "report": Verdict.SUCCEEDED}
    assert recorder.calls == ["report"]
    assert scheduler.neutral == {"release", "announce"}
    announce = next(i for i in scheduler.instances if i.id == "announce")
    assert announce.reason == "a needed job was skipped"


def test_failed_need_skip_is_not_neutral(workflow_from, recorder, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          build:
            steps:
              - run: fail
          deploy:
            needs: build
            steps:
              - run: deploy
        """
    )
    scheduler = make_scheduler(recorder)
    scheduler.run_all(wf.jobs)
    assert scheduler.neutral == set()


def test_cleanup_step_runs_after_cancellation(workflow_from, trigger, make_scheduler):
    wf = workflow_from(
        """
        jobs:
          build:
            steps:
              - run: slow
              - run: next
              - if: always()
                run: cleanup
              - if: cancelled()
                run: notify
        """
    )

    def cancel_mid_step():
        scheduler.cancel.cancel("cancelled by test")
        raise CancellationError(step="slow", reason="cancelled by test")

    executor = RecordingExecutor(trigger, on_run={"slow": cancel_mid_step})
    scheduler = make_scheduler(executor)
    verdicts = scheduler.run_all(wf.jobs)

    assert verdicts == {"build": Verdict.ERRORED}
    assert executor.calls == ["slow", "cleanup", "notify"]
    inst = scheduler.instances[0]
    assert [r.status for r in inst.results] == [
        StepStatus.ERRORED,
        StepStatus.SKIPPED,
        StepStatus.SUCCEEDED,
        StepStatus.SUCCEEDED,
    ]
    assert inst.reason == "cancelled by test"

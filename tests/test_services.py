"""Tests for per-instance service containers (docker is faked)."""

import subprocess

import pytest

from matrixci import services
from matrixci.errors import StepError
from matrixci.model import Service


class FakeDocker:
    def __init__(self, fail_on=None):
        self.calls = []
        self.fail_on = fail_on

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        if cmd[1] == self.fail_on:
            return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="image not found")
        if cmd[1] == "port":
            return subprocess.CompletedProcess(cmd, 0, stdout="0.0.0.0:49153\n[::]:49153\n", stderr="")
        return subprocess.CompletedProcess(cmd, 0, stdout="ok\n", stderr="")


@pytest.fixture
def docker(monkeypatch):
    fake = FakeDocker()
    monkeypatch.setattr(services.subprocess, "run", fake)
    return fake


def test_no_services_does_nothing(docker):
    with services.provision((), "build") as env:
        assert env == {}
    assert docker.calls == []


def test_containers_are_started_and_removed(docker):
    svc = Service(id="postgres", image="postgres:15", env={"POSTGRES_PASSWORD": "root"}, ports=("5432",))
    with services.provision((svc,), "tests[mode=debug]") as env:
        assert env == {"SERVICE_POSTGRES_HOST": "localhost", "SERVICE_POSTGRES_PORT_5432": "49153"}
        run = next(c for c in docker.calls if c[1] == "run")
        assert "--publish" in run and "5432" in run
        assert "POSTGRES_PASSWORD=root" in run
        assert run[-1] == "postgres:15"
        name = run[run.index("--name") + 1]
        assert name.startswith("matrixci-tests-mode-debug-postgres-")

    assert docker.calls[-1] == ["docker", "rm", "--force", name]


def test_containers_are_removed_when_steps_fail(docker):
    svc = Service(id="redis", image="redis:7", ports=("6379/tcp",))
    with pytest.raises(RuntimeError):
        with services.provision((svc,), "build"):
            raise RuntimeError("step blew up")
    assert docker.calls[-1][:3] == ["docker", "rm", "--force"]


def test_failed_start_is_step_error(monkeypatch):
    fake = FakeDocker(fail_on="run")
    monkeypatch.setattr(services.subprocess, "run", fake)
    with pytest.raises(StepError, match="image not found"):
        with services.provision((Service(id="db", image="nope"),), "build"):
            pass
    assert not any(c[1] == "rm" for c in fake.calls)


def test_docker_missing(monkeypatch):
    def missing(cmd, **kwargs):
        raise FileNotFoundError("docker")

    monkeypatch.setattr(services.subprocess, "run", missing)
    with pytest.raises(StepError, match="Docker is not available"):
        with services.provision((Service(id="db", image="postgres"),), "build"):
            pass

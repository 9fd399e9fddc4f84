# services.py
from __future__ import annotations

import re
import subprocess
import uuid
from contextlib import contextmanager
from typing import Dict, Iterator, List, Sequence

from .errors import StepError, hint_for
from .model import Service

SETUP_STEP = "Initialize containers"


def _docker(args: List[str]) -> str:
    proc = subprocess.run(["docker", *args], capture_output=True, text=True)
    if proc.returncode != 0:
        raise StepError(
            step=SETUP_STEP,
            message=f"docker {args[0]} failed: {(proc.stderr or proc.stdout).strip()}",
        )
    return proc.stdout.strip()


def _check_docker_available() -> None:
    try:
        subprocess.run(["docker", "--version"], capture_output=True, check=True)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        raise StepError(step=SETUP_STEP, message="Docker is not available", hint=hint_for("docker")) from e


def _env_prefix(service_id: str) -> str:
    return "SERVICE_" + re.sub(r"[^A-Za-z0-9]", "_", service_id).upper()


def _container_port(spec: str) -> str:
    """'5432', '5432/tcp' or '15432:5432' -> '5432'"""
    return spec.split(":")[-1].split("/")[0]


def _host_port(name: str, port: str) -> str:
    # `docker port` prints e.g. "0.0.0.0:49153" (one line per address family).
    out = _docker(["port", name, port])
    first = out.splitlines()[0] if out else ""
    return first.rsplit(":", 1)[-1]


@contextmanager
def provision(services: Sequence[Service], instance_id: str) -> Iterator[Dict[str, str]]:
    """
    Start the job's service containers for one instance and remove them on exit.

    Containers publish their ports on random host ports so concurrent
    instances never collide. Yields the variables steps use to reach them:
    SERVICE_<ID>_HOST and SERVICE_<ID>_PORT_<container port>.
    """
    if not services:
        yield {}
        return

    _check_docker_available()
    slug = re.sub(r"[^a-z0-9]+", "-", instance_id.lower()).strip("-")
    started: List[str] = []
    try:
        env: Dict[str, str] = {}
        for svc in services:
            name = f"matrixci-{slug}-{svc.id}-{uuid.uuid4().hex[:8]}"
            cmd = ["run", "--detach", "--name", name]
            for key, value in svc.env.items():
                cmd += ["--env", f"{key}={value}"]
            for port in svc.ports:
                cmd += ["--publish", _container_port(port)]
            _docker(cmd + [svc.image])
            started.append(name)

            prefix = _env_prefix(svc.id)
            env[f"{prefix}_HOST"] = "localhost"
            for port in svc.ports:
                cport = _container_port(port)
                env[f"{prefix}_PORT_{cport}"] = _host_port(name, cport)
        yield env
    finally:
        for name in reversed(started):
            subprocess.run(["docker", "rm", "--force", name], capture_output=True, text=True)

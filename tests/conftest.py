import os
import shutil
import textwrap

import pytest

from matrixci.environment import Environment
from matrixci.executor import StepExecutor
from matrixci.loader import parse_workflow
from matrixci.model import Trigger
from matrixci.ui.console import Console

requires_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")


@pytest.fixture
def trigger():
    return Trigger(event="push", ref="refs/heads/main", sha=None)


@pytest.fixture
def console():
    return Console(debug=False, color=False)


@pytest.fixture
def executor(trigger, tmp_path):
    return StepExecutor(trigger=trigger, repo_root=tmp_path)


@pytest.fixture
def base_env():
    """Minimal environment steps can run in."""
    return Environment({"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "HOME": "/tmp"})


@pytest.fixture
def workflow_from():
    def build(text: str):
        return parse_workflow(textwrap.dedent(text), source="matrixci.yml")

    return build

"""Tests for settings read from the environment."""

from pathlib import Path

import pytest

from matrixci.config import Settings
from matrixci.errors import ConfigError


def test_defaults():
    settings = Settings.from_env({})
    assert settings.workers is None
    assert settings.color is None
    assert settings.workspace_root is None
    assert settings.shell == "bash"
    assert settings.output_tail == 4000


def test_values_from_environment():
    settings = Settings.from_env(
        {
            "MATRIXCI_WORKERS": "3",
            "MATRIXCI_COLOR": "always",
            "MATRIXCI_WORKSPACE_DIR": "/tmp/ci",
            "MATRIXCI_SHELL": "sh",
            "MATRIXCI_OUTPUT_TAIL": "0",
        }
    )
    assert settings.workers == 3
    assert settings.color is True
    assert settings.workspace_root == Path("/tmp/ci")
    assert settings.shell == "sh"
    assert settings.output_tail == 0


def test_no_color_wins():
    assert Settings.from_env({"NO_COLOR": "1", "MATRIXCI_COLOR": "always"}).color is False


@pytest.mark.parametrize(
    "environ",
    [
        {"MATRIXCI_WORKERS": "zero"},
        {"MATRIXCI_WORKERS": "0"},
        {"MATRIXCI_WORKERS": "-2"},
        {"MATRIXCI_COLOR": "sometimes"},
        {"MATRIXCI_OUTPUT_TAIL": "lots"},
    ],
)
def test_invalid_values(environ):
    with pytest.raises(ConfigError):
        Settings.from_env(environ)

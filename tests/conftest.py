"""Shared pytest fixtures for all test modules."""

import os
import subprocess
import sys

import pytest
import yaml

import vmforge.redact as redact_module
from vmforge.provisioning import wait as wait_module

PROJECT_ROOT = os.path.normpath(os.path.join(os.path.dirname(__file__), ".."))


@pytest.fixture(scope="session")
def project_root():
    """Absolute path to the project root directory."""
    return PROJECT_ROOT


@pytest.fixture(scope="session")
def run_cli(project_root):
    """Return a callable that invokes the vmforge CLI as a subprocess."""

    def _run(*args):
        result = subprocess.run(
            [sys.executable, "-m", "vmforge.vmforge", *args],
            capture_output=True,
            text=True,
            cwd=project_root,
        )
        return result.returncode, result.stdout, result.stderr

    return _run


@pytest.fixture
def write_machine(tmp_path):
    """Return a factory that writes a machine YAML file and returns its path."""

    def _write(config, name="machine.yaml"):
        path = tmp_path / name
        with open(path, "w") as f:
            yaml.dump(config, f)
        return str(path)

    return _write


# ── Poll clock ──────────────────────────────────────────────────────


class FakeClock:
    """Stands in for the time module inside the wait primitive."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock(monkeypatch):
    """Make poll_until sleep instantly while tracking elapsed virtual time."""
    clock = FakeClock()
    monkeypatch.setattr(wait_module, "time", clock)
    return clock


@pytest.fixture(autouse=True)
def _isolate_redaction():
    """Reset the redaction cache so env and registered secrets don't leak between tests."""
    redact_module._patterns = None
    redact_module._registered.clear()
    yield
    redact_module._patterns = None
    redact_module._registered.clear()

"""Shared fixtures: a stand-in for subprocess.Popen."""

import io
import subprocess

import pytest


class FakePopen:
    """Replays canned output instead of running a process."""

    def __init__(self, args, output=b"", errors=b"", returncode=0, **kwargs):
        self.args = args
        self.kwargs = kwargs
        self.stdout = io.BytesIO(output)
        self.stderr = io.BytesIO(errors)
        self.returncode = returncode
        self.killed = False

    def kill(self):
        self.killed = True
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.stdout.close()
        self.stderr.close()


class FakeSpawner:
    """Records spawned commands and hands out FakePopen instances."""

    def __init__(self):
        self.calls = []
        self.processes = []
        self.error = None
        self.respond()

    def respond(self, stdout=b"", stderr=b"", returncode=0):
        if isinstance(stdout, str):
            stdout = stdout.encode()
        if isinstance(stderr, str):
            stderr = stderr.encode()
        self._stdout = stdout
        self._stderr = stderr
        self._returncode = returncode

    def __call__(self, args, **kwargs):
        if self.error is not None:
            raise self.error
        self.calls.append((args, kwargs))
        process = FakePopen(
            args, self._stdout, self._stderr, self._returncode, **kwargs
        )
        self.processes.append(process)
        return process

    @property
    def command(self):
        return self.calls[-1][0]

    @property
    def kwargs(self):
        return self.calls[-1][1]


@pytest.fixture
def spawn(monkeypatch):
    """Patch subprocess.Popen with a recording FakeSpawner."""
    spawner = FakeSpawner()
    monkeypatch.setattr(subprocess, "Popen", spawner)
    return spawner

"""Shared fixtures: a workspace config and a fake command runner."""

from pathlib import Path

import pytest

import build_arm_toolchain as bt


class FakeRunner:
    """Records commands instead of running them.

    `fail` names log files (e.g. "binutils-configure.log") whose command
    exits non-zero.
    """

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.calls = []

    def run(self, cmd, log_file, cwd=None, env=None):
        args = [str(arg) for arg in cmd]
        self.calls.append({"log": log_file.name, "args": args, "cwd": cwd, "env": env})
        log_file.write_text(f"$ {' '.join(args)}\n")
        if log_file.name.endswith("-prerequisites.log"):
            (Path(cwd) / "gmp").mkdir()
        returncode = 1 if log_file.name in self.fail else 0
        return bt.CommandResult(args, returncode, log_file)

    @property
    def logs(self):
        return [call["log"] for call in self.calls]

    def call(self, log_name):
        return next(call for call in self.calls if call["log"] == log_name)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def config(tmp_path):
    return bt.BuildConfig(root=tmp_path, jobs=2)


def _make_source(config, name, version, configure=True):
    source = config.build_dir / f"{name}-{version}"
    source.mkdir(parents=True)
    if configure:
        script = source / "configure"
        script.write_text("#!/bin/sh\n")
        script.chmod(0o755)
    return source


@pytest.fixture
def make_source(config):
    """Lay out an already-extracted source tree in the build workspace."""
    def make(name, version, configure=True):
        return _make_source(config, name, version, configure)
    return make


@pytest.fixture
def sources(config):
    """Extracted binutils, gcc and newlib sources plus a cached keyring."""
    made = {
        name: _make_source(config, name, bt.DEFAULT_VERSIONS[name])
        for name in ("binutils", "gcc", "newlib")
    }
    config.source_dir.mkdir(parents=True, exist_ok=True)
    config.keyring.write_bytes(b"keyring")
    return made

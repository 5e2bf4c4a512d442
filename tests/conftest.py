import dataclasses
import logging
import threading
from types import MappingProxyType

import pytest

from stagekit.engine.recorder import NullRunRecorder
from stagerun.app.run import build_runner
from stagerun.framework.config import EngineConfig
from stagerun.framework.credentials import MappingCredentialStore
from stagerun.framework.executor import CommandOutcome


class FakeCommandRunner:
    """Maps a command string to an exit code or to a callable producing a `CommandOutcome`."""

    def __init__(self, behaviors=None):
        self.behaviors = dict(behaviors or {})
        self.calls = []
        self._lock = threading.Lock()

    def run(self, command, *, env, cwd, timeout, cancel):
        key = command if isinstance(command, str) else " ".join(command)
        with self._lock:
            self.calls.append({"command": key, "env": dict(env), "cwd": cwd, "timeout": timeout})
        behavior = self.behaviors.get(key, 0)
        if callable(behavior):
            return behavior(env=env, cwd=cwd, timeout=timeout, cancel=cancel)
        return CommandOutcome(exit_code=int(behavior), stdout=f"ran {key}\n")

    def commands(self):
        with self._lock:
            return [call["command"] for call in self.calls]

    def env_for(self, command):
        with self._lock:
            for call in self.calls:
                if call["command"] == command:
                    return call["env"]
        raise KeyError(command)


def hang(*, env, cwd, timeout, cancel):
    """Blocks like a command that never exits on its own."""
    if cancel.wait(timeout if timeout is not None else 10.0, poll_interval=0.01):
        return CommandOutcome(exit_code=-9, cancelled=True)
    return CommandOutcome(exit_code=-9, timed_out=True)


@pytest.fixture
def engine_config(tmp_path):
    cfg, _warnings = EngineConfig.from_dict(
        {
            "engine": {
                "workspace_root": str(tmp_path / "workspaces"),
                "log_path": str(tmp_path / "logs"),
                "artifact_path": str(tmp_path / "artifacts"),
                "run_index_path": str(tmp_path / "runs.jsonl"),
                "poll_interval": 0.01,
            },
            "slots": {"any": 4},
            "credentials": {"source": "none"},
            "gates": {"default_timeout": 5},
        }
    )
    return cfg


@pytest.fixture
def test_logger():
    logger = logging.getLogger("stagerun.tests")
    logger.setLevel(logging.DEBUG)
    logger.propagate = True
    return logger


@pytest.fixture
def make_runner(engine_config, test_logger):
    def _make(*, commands=None, credentials=None, gates=None, slots=None, recorder=None, post_grace=None):
        cfg = engine_config
        if post_grace is not None:
            cfg = dataclasses.replace(cfg, post_grace=post_grace)
        if slots is not None:
            cfg = dataclasses.replace(cfg, slots=MappingProxyType(dict(slots)))
        return build_runner(
            cfg,
            logger=test_logger,
            command_runner=commands if commands is not None else FakeCommandRunner(),
            credential_store=MappingCredentialStore(credentials),
            gates=gates,
            recorder=recorder or NullRunRecorder(),
        )

    return _make

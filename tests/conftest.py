import pytest

from hercules_runner.context import AppContext
from hercules_runner.utils import CommandResult

HERCULES_LISTED = "Package            Version\ntestzeus-hercules  0.1.5\n"


class FakeRunner:
    """Stands in for ``run_command``; answers by longest matching argument prefix."""

    def __init__(self, responses=None):
        self.calls = []
        self.responses = {
            ("docker", "--version"): (0, "Docker version 27.0.1, build abc", ""),
            ("python", "--version"): (0, "Python 3.12.1", ""),
            ("pip", "list"): (0, HERCULES_LISTED, ""),
        }
        self.responses.update(responses or {})

    async def __call__(self, args):
        args = [str(a) for a in args]
        self.calls.append(args)
        for prefix in sorted(self.responses, key=len, reverse=True):
            if tuple(args[: len(prefix)]) == prefix:
                response = self.responses[prefix]
                if isinstance(response, Exception):
                    raise response
                return CommandResult(args, *response)
        return CommandResult(args, 0, "", "")

    def called(self, *prefix):
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]


class FakeTerminal:
    def __init__(self, name, env=None, cwd=None, output_callback=None, log_path=None):
        self.name = name
        self.log_path = log_path
        self.env = env or {}
        self.cwd = cwd
        self.sent = []
        self.interrupted = False

    async def send_text(self, text, execute=True):
        self.sent.append((text, execute))

    def interrupt(self):
        self.interrupted = True


class TerminalRecorder:
    def __init__(self):
        self.terminals = []

    def __call__(self, **kwargs):
        terminal = FakeTerminal(**kwargs)
        self.terminals.append(terminal)
        return terminal


@pytest.fixture
def storage_dir(tmp_path):
    path = tmp_path / "storage"
    path.mkdir()
    return path


@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def terminals():
    return TerminalRecorder()


@pytest.fixture
def ctx(storage_dir, workspace, runner, terminals):
    return AppContext(
        storage_dir=storage_dir,
        workspace_root=workspace,
        runner=runner,
        terminal_factory=terminals,
        chrome_path="/opt/fake/chrome",
    )

import os
import re
import sys
import signal
import asyncio
import logging
import subprocess
from typing import Callable, Dict, List, Optional, Union

from .errors import LaunchFailed

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], None]

_SECRET_FLAG = re.compile(r'(--llm-model-api-key=)("[^"]*"|\S+)')


def redact_secrets(script: str) -> str:
    """Mask the values of secret-carrying flags in a command line."""
    return _SECRET_FLAG.sub(r'\1"***"', script)


class Terminal:
    """A named shell session whose output is mirrored live and captured.

    Lines queued with ``send_text(..., execute=False)`` (such as a venv
    activation line) run in the same shell as the next executed line, so
    their effect carries over. stdin is inherited from the caller, which keeps
    interactive commands like ``docker run -it`` working.

    With a ``log_path`` the session is detached instead: it outlives the
    caller's event loop, reads nothing from stdin and appends its output to
    that file.
    """

    def __init__(
        self,
        name: str,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        output_callback: Optional[OutputCallback] = None,
        log_path: Optional[str] = None,
    ):
        self.name = name
        self.env = dict(env or {})
        self.cwd = cwd
        self.output_callback = output_callback
        self.log_path = log_path
        self.lines: List[str] = []
        self.output_lines: List[str] = []
        self.process: Optional[Union[asyncio.subprocess.Process, subprocess.Popen]] = None
        self._pending: List[str] = []
        self._pump: Optional[asyncio.Task] = None

    @property
    def detached(self) -> bool:
        return self.log_path is not None

    @property
    def output(self) -> str:
        return "".join(self.output_lines)

    @property
    def is_running(self) -> bool:
        if self.process is None:
            return False
        if isinstance(self.process, subprocess.Popen):
            return self.process.poll() is None
        return self.process.returncode is None

    async def send_text(self, text: str, execute: bool = True) -> None:
        """Submit *text* as one line of input.

        With ``execute=False`` the line is held and prefixed to the next
        executed line.
        """
        self.lines.append(text)
        self._pending.append(text)
        if execute:
            script = " && ".join(self._pending)
            self._pending = []
            await self._start(script)

    def _session_kwargs(self) -> dict:
        env = os.environ.copy()
        env.update(self.env)
        kwargs: dict = {"cwd": self.cwd, "env": env}
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        return kwargs

    async def _start(self, script: str) -> None:
        if self.is_running:
            await self.wait()

        logger.info(f"[{self.name}] {redact_secrets(script)}")
        if self.detached:
            self._start_detached(script)
            return
        try:
            self.process = await asyncio.create_subprocess_shell(
                script,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                **self._session_kwargs(),
            )
        except OSError as e:
            raise LaunchFailed(f"Could not start terminal '{self.name}': {e}") from e
        self._pump = asyncio.create_task(self._pump_output(self.process))

    def _start_detached(self, script: str) -> None:
        # Not tied to the event loop, so the process survives asyncio.run() returning.
        try:
            with open(self.log_path, "a", encoding="utf-8") as log:
                self.process = subprocess.Popen(
                    script,
                    shell=True,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    **self._session_kwargs(),
                )
        except OSError as e:
            raise LaunchFailed(f"Could not start terminal '{self.name}': {e}") from e

    async def _pump_output(self, process: asyncio.subprocess.Process) -> None:
        async for raw_line in process.stdout:
            line = raw_line.decode(errors="replace")
            self.output_lines.append(line)
            if self.output_callback:
                self.output_callback(line.rstrip("\r\n"))

    async def wait(self) -> int:
        """Wait for the running command to finish and return its exit code."""
        if self.process is None:
            raise LaunchFailed(f"Nothing has been started in terminal '{self.name}'")
        if isinstance(self.process, subprocess.Popen):
            return await asyncio.to_thread(self.process.wait)
        if self._pump is not None:
            await self._pump
        return await self.process.wait()

    def interrupt(self) -> None:
        """Deliver the equivalent of a Ctrl+C keystroke to the running command."""
        if not self.is_running:
            return
        try:
            if sys.platform == "win32":
                self.process.send_signal(signal.CTRL_BREAK_EVENT)
            else:
                os.killpg(self.process.pid, signal.SIGINT)
        except ProcessLookupError:
            logger.debug(f"[{self.name}] process already exited")

import os
import sys
import signal
import shutil
import asyncio
import logging
import platform
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import httpx
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

APP_DIR_ENV = "HERCULES_RUNNER_HOME"


# ---------------------------------------------------------------------------
# Storage locations
# ---------------------------------------------------------------------------


def get_app_data_dir() -> Path:
    """Determine the OS-specific data directory used as persistent storage.

    ``HERCULES_RUNNER_HOME`` takes precedence when set.
    """
    override = os.getenv(APP_DIR_ENV)
    if override:
        root = Path(override).expanduser()
    else:
        system = platform.system()
        user_home = Path.home()
        if system == "Windows":
            root = user_home / "AppData" / "Local" / "HerculesRunner"
        elif system == "Darwin":
            root = user_home / "Library" / "Application Support" / "HerculesRunner"
        else:  # Linux and others
            root = user_home / ".local" / "share" / "hercules-runner"

    root.mkdir(parents=True, exist_ok=True)
    return root


def load_all_dotenv():
    """Load .env from current directory and global app data directory."""
    load_dotenv()
    global_env = get_app_data_dir() / ".env"
    if global_env.exists():
        load_dotenv(dotenv_path=global_env, override=False)


def get_default_filesystem_root() -> Path:
    """Return the current working directory as the default workspace root."""
    return Path(os.getcwd()).resolve()


# ---------------------------------------------------------------------------
# Subprocess helpers
# ---------------------------------------------------------------------------


@dataclass
class CommandResult:
    args: Sequence[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(args: Sequence[str], cwd: Optional[str] = None) -> CommandResult:
    """Run *args* without a shell and capture its output.

    Raises ``FileNotFoundError`` / ``OSError`` when the executable cannot be
    started; a non-zero exit is reported through ``returncode``.
    """
    logger.debug("Running: %s", " ".join(str(a) for a in args))
    process = await asyncio.create_subprocess_exec(
        *[str(a) for a in args],
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()
    return CommandResult(
        args=list(args),
        returncode=process.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


def venv_executable(venv_path: str, name: str) -> Path:
    """Return the path of *name* (``pip``, ``python``, ``playwright``) inside a venv."""
    if sys.platform == "win32":
        return Path(venv_path) / "Scripts" / f"{name}.exe"
    return Path(venv_path) / "bin" / name


def terminate_process_tree(pid: int) -> None:
    """Forcefully end *pid* and its children on Windows, SIGTERM elsewhere."""
    if sys.platform == "win32":
        subprocess.run(
            ["taskkill", "/pid", str(pid), "/T", "/F"],
            capture_output=True,
            timeout=10,
        )
    else:
        os.kill(pid, signal.SIGTERM)


# ---------------------------------------------------------------------------
# CDP (Chrome DevTools Protocol) browser helpers
# ---------------------------------------------------------------------------

DEFAULT_CHROME_PATHS = {
    "darwin": "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "win32": r"C:\Program Files\Google\Chrome\Application\chrome.exe",
    "linux": "/usr/bin/google-chrome",
}

_CHROME_COMMANDS = (
    "google-chrome-stable",
    "google-chrome",
    "chromium",
    "chromium-browser",
)


def get_browser_executable(override: Optional[str] = None) -> Optional[str]:
    """Return the Chrome executable to launch, or ``None`` if none is found.

    An explicit *override* always wins, even when it does not exist yet, so a
    misconfigured path surfaces as a launch error rather than being ignored.
    """
    if override:
        return override

    default = DEFAULT_CHROME_PATHS.get(sys.platform, "")
    if default and Path(default).exists():
        return default

    for cmd in _CHROME_COMMANDS:
        path = shutil.which(cmd)
        if path:
            return path

    return None


def is_cdp_port_open(port: int) -> bool:
    """Return ``True`` if a CDP-enabled browser answers ``/json/version`` on *port*."""
    for host in ("127.0.0.1", "localhost"):
        try:
            resp = httpx.get(f"http://{host}:{port}/json/version", timeout=2.0)
            if resp.status_code == 200:
                return True
        except httpx.HTTPError:
            continue
    return False

"""Chrome DevTools Protocol browser launcher.

Launches a Chrome instance with remote debugging enabled on a random local
port and exposes its WebSocket debugger URL so Hercules (or any other CDP
client) can attach to it.
"""

import sys
import time
import random
import asyncio
import logging
import tempfile
import subprocess
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

import httpx

from .config_store import GlobalState
from .errors import LaunchFailed
from .utils import get_browser_executable, terminate_process_tree

logger = logging.getLogger(__name__)

DEBUG_PORT_MIN = 9222
DEBUG_PORT_MAX = 9999
DEFAULT_SETTLE_DELAY = 2.0

_CDP_LAUNCH_ARGS: List[str] = [
    "--no-first-run",
    "--no-default-browser-check",
    "--start-maximized",
    "--incognito",
]

StatusListener = Callable[[], None]
Spawner = Callable[..., Awaitable[Any]]


async def _spawn_detached(*args: str) -> asyncio.subprocess.Process:
    kwargs: dict = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = (
            subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.DETACHED_PROCESS
        )
    else:
        kwargs["start_new_session"] = True
    return await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
        **kwargs,
    )


class CdpBrowserManager:
    """Two-state (Stopped/Running) manager for a single debug-enabled browser.

    The browser may also exit on its own; a watcher task notices that and
    returns the manager to Stopped exactly as ``close_browser()`` would.
    """

    def __init__(
        self,
        state: GlobalState,
        chrome_path: Optional[str] = None,
        *,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        spawner: Optional[Spawner] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.state = state
        self.chrome_path = chrome_path
        self.settle_delay = settle_delay
        self._spawner = spawner or _spawn_detached
        self._transport = transport

        self._process: Optional[Any] = None
        self._watcher: Optional[asyncio.Task] = None
        self._cdp_url: Optional[str] = None
        self.debug_port = 0
        self.user_data_dir = ""
        self._listeners: List[StatusListener] = []

        # A browser from a previous run is not adopted, only remembered.
        self._last_url = ""
        if state.get("cdpBrowserRunning", False):
            self._last_url = state.get("lastCdpUrl", "") or ""

    # ── Listeners ───────────────────────────────────────────────────────

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"Browser status listener failed: {e}")

    # ── Queries ─────────────────────────────────────────────────────────

    def is_browser_running(self) -> bool:
        return self._process is not None and self._cdp_url is not None

    def get_browser_endpoint(self) -> str:
        return self._cdp_url or ""

    def get_debug_port(self) -> int:
        return self.debug_port

    def get_last_endpoint(self) -> str:
        """The URL of the browser recorded as running by a previous invocation."""
        return self._last_url

    @property
    def process(self) -> Optional[Any]:
        return self._process

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def spawn_browser(self) -> str:
        """Start a debug-enabled browser and return its WebSocket debugger URL.

        Any browser started earlier by this manager is closed first.

        Raises:
            LaunchFailed: no executable was found, the process could not be
                started, or the debugging endpoint did not report a URL.
        """
        await self.close_browser()

        port = random.randrange(DEBUG_PORT_MIN, DEBUG_PORT_MAX)
        user_data_dir = str(
            Path(tempfile.gettempdir()) / f"chrome-debug-{int(time.time() * 1000)}"
        )

        exe = get_browser_executable(self.chrome_path)
        if not exe:
            raise LaunchFailed(
                "Chrome executable path not found. Set HERCULES_CHROME_PATH to configure it."
            )

        args = [
            exe,
            f"--remote-debugging-port={port}",
            f"--user-data-dir={user_data_dir}",
            *_CDP_LAUNCH_ARGS,
        ]
        logger.info("Launching Chrome with args: %s", " ".join(args[1:]))

        try:
            process = await self._spawner(*args)
        except OSError as e:
            raise LaunchFailed(f"Failed to start Chrome: {e}") from e

        self._process = process
        self.debug_port = port
        self.user_data_dir = user_data_dir
        self._watcher = asyncio.create_task(self._watch(process))

        await asyncio.sleep(self.settle_delay)

        if self._process is not process:
            raise LaunchFailed(
                f"Chrome exited before its debugging endpoint was ready (code {process.returncode})"
            )

        try:
            cdp_url = await self._fetch_websocket_url(port)
        except LaunchFailed:
            await self.close_browser()
            raise

        self._cdp_url = cdp_url
        self._last_url = cdp_url
        self.state.update_many(
            {
                "lastCdpUrl": cdp_url,
                "cdpEndpointUrl": cdp_url,
                "cdpBrowserRunning": True,
                "cdpBrowserPid": process.pid,
            }
        )
        logger.info(f"CDP URL available: {cdp_url}")
        self._notify()
        return cdp_url

    async def _fetch_websocket_url(self, port: int) -> str:
        url = f"http://localhost:{port}/json/version"
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=5.0) as client:
                resp = await client.get(url)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error getting WebSocket URL: {e}")
            raise LaunchFailed(f"Failed to connect to Chrome debugging API: {e}") from e

        ws_url = data.get("webSocketDebuggerUrl") if isinstance(data, dict) else None
        if not ws_url:
            raise LaunchFailed(
                "Failed to connect to Chrome debugging API: "
                "Could not retrieve WebSocket debugger URL"
            )
        return ws_url

    async def _watch(self, process: Any) -> None:
        await process.wait()
        if self._process is process:
            logger.info(f"Chrome exited (code {process.returncode}); CDP session ended")
            self._clear()
            self._notify()

    def _clear(self) -> None:
        self._process = None
        self._watcher = None
        self._cdp_url = None
        self.state.update_many({"cdpBrowserRunning": False, "cdpEndpointUrl": ""})

    async def close_browser(self) -> None:
        """Terminate the browser started by this manager, if any."""
        process = self._process
        if process is None:
            return

        watcher = self._watcher
        self._process = None
        if watcher is not None and not watcher.done():
            watcher.cancel()

        try:
            if sys.platform == "win32":
                terminate_process_tree(process.pid)
            else:
                process.terminate()
        except (ProcessLookupError, OSError, subprocess.SubprocessError) as e:
            logger.error(f"Error closing browser: {e}")

        try:
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Chrome did not exit within 5s after termination")

        self._clear()
        logger.info("CDP browser session closed")
        self._notify()

    def close_detached_browser(self) -> bool:
        """Terminate a browser recorded in the global state by another invocation.

        Returns True if a recorded browser was signalled.
        """
        pid = self.state.get("cdpBrowserPid")
        if not pid or not self.state.get("cdpBrowserRunning", False):
            return False
        try:
            terminate_process_tree(int(pid))
        except (ProcessLookupError, OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Could not terminate browser pid {pid}: {e}")
        self.state.update_many({"cdpBrowserRunning": False, "cdpEndpointUrl": ""})
        self._last_url = ""
        return True

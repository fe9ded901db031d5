import os
import sys
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .config_store import ConfigStore
from .environment import EnvironmentResolver, ProgressCallback
from .errors import NoPreviousRun, NoWorkspace, RuntimeUnavailable
from .paths import FolderSet, PathResolver
from .serializers import DockerEnvironment, HERCULES_PACKAGE, VirtualEnvEnvironment
from .terminal import OutputCallback, Terminal

logger = logging.getLogger(__name__)

TerminalFactory = Callable[..., Terminal]

CONTAINER_WORKSPACE = "/app/workspace"
CONTAINER_INPUT = "/app/input"
CONTAINER_OUTPUT = "/app/output"
CONTAINER_TEST_DATA = "/app/test_data"

STOP_FILE_NAME = "stop"
LAST_RUN_FILE_NAME = "last_run"
LOG_FILE_NAME = "hercules.log"


def _bool_env(value: bool) -> str:
    return "true" if value else "false"


class ProcessOrchestrator:
    """Turns a Hercules run request into a concrete, visible execution."""

    def __init__(
        self,
        config_store: ConfigStore,
        path_resolver: PathResolver,
        environment: EnvironmentResolver,
        workspace_root: Optional[Path] = None,
        terminal_factory: TerminalFactory = Terminal,
        output_callback: Optional[OutputCallback] = None,
    ):
        self.config_store = config_store
        self.paths = path_resolver
        self.environment = environment
        self.workspace_root = workspace_root
        self.terminal_factory = terminal_factory
        self.output_callback = output_callback

    # ── Command construction ────────────────────────────────────────────

    def build_hercules_command(
        self, folders: FolderSet, script_path: Optional[str] = None
    ) -> str:
        llm = self.config_store.get_config().llm

        command = HERCULES_PACKAGE
        if script_path:
            command += f' --input-file "{script_path}"'
        else:
            command += f' --project-base="{self.paths.get_base_path()}"'

        command += f' --output-path="{folders.output}"'
        command += f' --test-data-path="{folders.test_data}"'

        if llm.model:
            command += f' --llm-model="{llm.model}"'
        if llm.api_key:
            command += f' --llm-model-api-key="{llm.api_key}"'
        if llm.config_file:
            command += f' --llm-config-file="{llm.config_file}"'
        if llm.config_file_ref_key:
            command += f' --llm-config-file-ref-key="{llm.config_file_ref_key}"'
        return command

    def build_env_vars(self) -> Dict[str, str]:
        """Browser and runner switches passed to Hercules as environment variables."""
        config = self.config_store.get_config()
        browser = config.browser
        advanced = config.advanced

        env = {
            "BROWSER_TYPE": browser.browser_type,
            "HEADLESS": _bool_env(browser.headless),
            "RECORD_VIDEO": _bool_env(browser.record_video),
            "TAKE_SCREENSHOTS": _bool_env(browser.take_screenshots),
            "CAPTURE_NETWORK": _bool_env(browser.capture_network),
            "AUTO_MODE": _bool_env(advanced.auto_mode),
            "TELEMETRY_ENABLED": _bool_env(advanced.telemetry_enabled),
            "LOAD_EXTRA_TOOLS": _bool_env(advanced.load_extra_tools),
            "ENABLE_PLAYWRIGHT_TRACING": _bool_env(advanced.enable_playwright_tracing),
        }
        if browser.resolution:
            env["BROWSER_RESOLUTION"] = browser.resolution
        if browser.run_device:
            env["RUN_DEVICE"] = browser.run_device
        return env

    def _volume_mappings(self, folders: FolderSet) -> List[Tuple[str, str]]:
        mappings = [
            (str(self.workspace_root), CONTAINER_WORKSPACE),
            (folders.input, CONTAINER_INPUT),
            (folders.output, CONTAINER_OUTPUT),
            (folders.test_data, CONTAINER_TEST_DATA),
        ]
        return [(host, container) for host, container in mappings if host]

    @staticmethod
    def translate_paths(command: str, mappings: List[Tuple[str, str]]) -> str:
        """Replace host paths in *command* with their container paths.

        Longer host paths are replaced first so a folder nested under the
        workspace maps to its own mount rather than to a workspace subpath.
        """
        for host, container in sorted(mappings, key=lambda m: len(m[0]), reverse=True):
            command = command.replace(host, container)
        return command

    def build_docker_invocation(
        self,
        command: str,
        environment: DockerEnvironment,
        env_vars: Optional[Dict[str, str]] = None,
        interactive: bool = True,
    ) -> str:
        if not self.workspace_root:
            raise NoWorkspace(
                "No workspace folder is open. Please open a workspace folder to run Docker commands."
            )

        folders = self.paths.create_folders()
        mappings = self._volume_mappings(folders)

        parts = ["docker run --rm -it" if interactive else "docker run --rm"]
        for key, value in (env_vars or {}).items():
            escaped = str(value).replace('"', '\\"')
            parts.append(f'-e {key}="{escaped}"')
        for host, container in mappings:
            parts.append(f'-v "{host}:{container}"')
        parts.append(environment.image)
        parts.append(self.translate_paths(command, mappings))
        return " ".join(parts)

    # ── Execution strategies ────────────────────────────────────────────

    def _open_terminal(
        self,
        name: str,
        env_vars: Optional[Dict[str, str]] = None,
        log_path: Optional[str] = None,
    ) -> Terminal:
        return self.terminal_factory(
            name=name,
            env=env_vars or {},
            cwd=str(self.workspace_root) if self.workspace_root else None,
            output_callback=self.output_callback,
            log_path=log_path,
        )

    async def run_in_docker(
        self,
        command: str,
        environment: DockerEnvironment,
        env_vars: Optional[Dict[str, str]] = None,
        log_path: Optional[str] = None,
    ) -> Terminal:
        if not await self.environment.is_runtime_available("docker"):
            raise RuntimeUnavailable(
                "Docker is not available. Please install Docker to use this feature."
            )
        invocation = self.build_docker_invocation(
            command, environment, env_vars, interactive=log_path is None
        )
        terminal = self._open_terminal("TestZeus Hercules (Docker)", log_path=log_path)
        await terminal.send_text(invocation)
        return terminal

    async def run_in_virtual_env(
        self,
        command: str,
        env_vars: Optional[Dict[str, str]] = None,
        environment: Optional[VirtualEnvEnvironment] = None,
        log_path: Optional[str] = None,
    ) -> Terminal:
        venv_path = (environment.path if environment else None) or (
            self.environment.get_options().virtual_env_path
        )
        if not venv_path:
            raise RuntimeUnavailable(
                "No virtual environment is configured. Run 'hercules-runner env setup' first."
            )

        terminal = self._open_terminal("TestZeus Hercules (venv)", env_vars, log_path)
        await terminal.send_text(activation_line(venv_path), execute=False)
        await terminal.send_text(command)
        return terminal

    async def run_locally(
        self,
        command: str,
        env_vars: Optional[Dict[str, str]] = None,
        log_path: Optional[str] = None,
    ) -> Terminal:
        terminal = self._open_terminal("TestZeus Hercules", env_vars, log_path)
        await terminal.send_text(command)
        return terminal

    # ── Full flows ──────────────────────────────────────────────────────

    def _resolve_script(self, script_path: str) -> str:
        if os.path.isabs(script_path) or os.path.exists(script_path):
            return os.path.abspath(script_path)
        return self.paths.resolve_path(script_path, "input")

    async def run_hercules(
        self,
        script_path: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
        detach: bool = False,
    ) -> Terminal:
        """Prepare the environment and launch Hercules for *script_path* (or the whole project).

        With *detach* the run outlives this process and its output goes to
        ``<output>/run/hercules.log`` instead of the output callback.
        """
        folders = self.paths.create_folders()
        self.clear_stop_signal(folders)

        await self.environment.ensure_ready(progress)

        if script_path:
            script_path = self._resolve_script(script_path)
            self.write_last_run(folders, script_path)

        command = self.build_hercules_command(folders, script_path)
        env_vars = self.build_env_vars()
        environment = self.environment.get_options().as_environment()
        log_path = None
        if detach:
            folders.run_dir.mkdir(parents=True, exist_ok=True)
            log_path = str(folders.run_dir / LOG_FILE_NAME)

        if isinstance(environment, DockerEnvironment):
            return await self.run_in_docker(command, environment, env_vars, log_path)
        if isinstance(environment, VirtualEnvEnvironment):
            return await self.run_in_virtual_env(command, env_vars, environment, log_path)
        return await self.run_locally(command, env_vars, log_path)

    async def rerun_last(
        self, progress: Optional[ProgressCallback] = None, detach: bool = False
    ) -> Terminal:
        script_path = self.read_last_run()
        if not script_path:
            raise NoPreviousRun("No previous test run found")
        if not os.path.exists(script_path):
            raise NoPreviousRun(
                f"Last run script path is invalid or the file does not exist: {script_path}"
            )
        logger.info(f"Rerunning test: {os.path.basename(script_path)}")
        return await self.run_hercules(script_path, progress, detach)

    # ── Run markers ─────────────────────────────────────────────────────

    def write_last_run(self, folders: FolderSet, script_path: str) -> Path:
        folders.run_dir.mkdir(parents=True, exist_ok=True)
        marker = folders.run_dir / LAST_RUN_FILE_NAME
        marker.write_text(script_path, encoding="utf-8")
        return marker

    def read_last_run(self) -> Optional[str]:
        marker = self.paths.create_folders().run_dir / LAST_RUN_FILE_NAME
        if not marker.exists():
            return None
        return marker.read_text(encoding="utf-8").strip() or None

    def clear_stop_signal(self, folders: Optional[FolderSet] = None) -> None:
        folders = folders or self.paths.create_folders()
        stop_file = folders.run_dir / STOP_FILE_NAME
        if stop_file.exists():
            stop_file.unlink()
            logger.debug(f"Removed stale stop signal {stop_file}")

    def stop_execution(self, terminal: Optional[Terminal] = None) -> Path:
        """Ask a running Hercules to stop. Advisory: the runner polls the stop file."""
        folders = self.paths.create_folders()
        folders.run_dir.mkdir(parents=True, exist_ok=True)
        stop_file = folders.run_dir / STOP_FILE_NAME
        stop_file.write_text("stop", encoding="utf-8")
        if terminal is not None:
            terminal.interrupt()
        logger.info("Signal sent to stop test execution")
        return stop_file


def activation_line(venv_path: str) -> str:
    """Shell line that activates the virtual environment at *venv_path*."""
    if sys.platform == "win32":
        return f'"{venv_path}\\Scripts\\activate.bat"'
    return f'. "{venv_path}/bin/activate"'

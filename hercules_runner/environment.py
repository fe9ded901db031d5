import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from pydantic import ValidationError

from .config_store import ConfigStore
from .errors import ConfigIO, InstallFailed, RuntimeUnavailable
from .serializers import (
    ENVIRONMENT_LABELS,
    HERCULES_PACKAGE,
    EnvironmentType,
    ExecutionEnvironmentOptions,
)
from .utils import CommandResult, run_command, venv_executable

logger = logging.getLogger(__name__)

CommandRunner = Callable[[Sequence[str]], Awaitable[CommandResult]]
ProgressCallback = Callable[[str], None]

_PYTHON_CANDIDATES = ("python", "python3")


class EnvironmentResolver:
    """Decides which runtime executes Hercules and makes sure it is usable.

    Options live in ``advanced.executionEnvironment`` of the configuration,
    so every change made here is persisted through the ``ConfigStore``.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        storage_dir: Path,
        runner: Optional[CommandRunner] = None,
    ):
        self.config_store = config_store
        self.storage_dir = storage_dir
        self.runner: CommandRunner = runner or run_command
        self._python_executable: Optional[str] = None

    # ── Options ─────────────────────────────────────────────────────────

    @property
    def _options(self) -> ExecutionEnvironmentOptions:
        return self.config_store.get_config().advanced.execution_environment

    def get_options(self) -> ExecutionEnvironmentOptions:
        return self._options.model_copy(deep=True)

    def set_options(self, **partial: Any) -> ExecutionEnvironmentOptions:
        """Merge *partial* (snake_case field names) into the options and persist them."""
        merged = self._options.model_dump()
        merged.update(partial)
        try:
            options = ExecutionEnvironmentOptions.model_validate(merged)
        except ValidationError as e:
            raise ConfigIO(f"Invalid execution environment options: {e}") from e
        self.config_store.get_config().advanced.execution_environment = options
        self.config_store.save()
        return options.model_copy(deep=True)

    def get_environment_label(self) -> str:
        return ENVIRONMENT_LABELS.get(self._options.environment_type, "Unknown")

    def _pip_command(self, *args: str) -> List[str]:
        options = self._options
        if options.uses_virtual_env and options.virtual_env_path:
            return [str(venv_executable(options.virtual_env_path, "pip")), *args]
        return ["pip", *args]

    def _python_command(self, *args: str) -> List[str]:
        options = self._options
        if options.uses_virtual_env and options.virtual_env_path:
            return [str(venv_executable(options.virtual_env_path, "python")), *args]
        return [self._python_executable or "python", *args]

    # ── Probes ──────────────────────────────────────────────────────────

    async def is_tool_available(self) -> bool:
        """Return True if Hercules is installed for the active environment. Never raises."""
        options = self._options
        try:
            if options.environment_type == EnvironmentType.DOCKER:
                result = await self.runner(
                    [
                        "docker",
                        "image",
                        "ls",
                        options.docker_image,
                        "--format",
                        "{{.Repository}}:{{.Tag}}",
                    ]
                )
                return result.ok and result.stdout.strip() == options.docker_image

            result = await self.runner(self._pip_command("list"))
            return result.ok and HERCULES_PACKAGE in result.stdout
        except Exception as e:
            logger.error(f"Error checking if Hercules is installed: {e}")
            return False

    async def is_runtime_available(self, kind: str) -> bool:
        """Probe ``docker`` or ``python`` (falling back to ``python3``). Never raises."""
        if kind == "docker":
            try:
                result = await self.runner(["docker", "--version"])
                return result.ok and "Docker version" in result.stdout
            except Exception as e:
                logger.error(f"Error checking if Docker is installed: {e}")
                return False

        if kind == "python":
            for candidate in _PYTHON_CANDIDATES:
                try:
                    result = await self.runner([candidate, "--version"])
                except Exception as e:
                    logger.error(f"Error checking {candidate} --version: {e}")
                    continue
                # Python 2 prints its version to stderr
                output = (result.stdout + result.stderr).lower()
                if result.ok and "python" in output:
                    self._python_executable = candidate
                    return True
            return False

        raise ValueError(f"Unknown runtime kind: {kind}")

    # ── Provisioning ────────────────────────────────────────────────────

    async def ensure_ready(self, progress: Optional[ProgressCallback] = None) -> None:
        """Verify the runtime for the active environment and install what is missing.

        Raises:
            RuntimeUnavailable: Docker or Python is not installed.
            InstallFailed: creating the venv, pulling the image or installing
                packages failed.
        """
        options = self._options
        env_type = options.environment_type
        logger.info("Preparing %s environment", ENVIRONMENT_LABELS[env_type])

        if env_type == EnvironmentType.DOCKER:
            if not await self.is_runtime_available("docker"):
                raise RuntimeUnavailable(
                    "Docker is not available. Please install Docker to use this feature."
                )
            if options.install_if_missing and not await self.is_tool_available():
                await self._pull_image(options.docker_image, progress)
            return

        if not await self.is_runtime_available("python"):
            raise RuntimeUnavailable(
                "Python is not available. Please install Python to use this feature."
            )

        if env_type == EnvironmentType.PYTHON_VENV:
            await self._setup_virtual_env(progress)

        if self._options.install_if_missing and not await self.is_tool_available():
            await self._install_hercules(progress)
            await self._install_playwright(progress)

    async def _run_step(self, args: Sequence[str], failure: str) -> CommandResult:
        try:
            result = await self.runner(args)
        except OSError as e:
            raise InstallFailed(f"{failure}: {e}") from e
        if not result.ok:
            detail = (result.stderr or result.stdout).strip()
            raise InstallFailed(f"{failure}: {detail or f'exit code {result.returncode}'}")
        return result

    async def _setup_virtual_env(self, progress: Optional[ProgressCallback]) -> None:
        options = self._options
        if not options.virtual_env_path:
            venv_path = str(self.storage_dir / "venv")
            logger.info(f"Assigning virtual environment path {venv_path}")
            options = self.set_options(virtual_env_path=venv_path)

        if Path(options.virtual_env_path).exists():
            return

        if progress:
            progress("Creating virtual environment...")
        await self._run_step(
            [self._python_executable or "python", "-m", "venv", options.virtual_env_path],
            "Failed to set up virtual environment",
        )
        logger.info(f"Virtual environment created at {options.virtual_env_path}")

    async def _install_hercules(self, progress: Optional[ProgressCallback]) -> None:
        if progress:
            progress(f"Installing {HERCULES_PACKAGE}...")
        await self._run_step(
            self._pip_command("install", HERCULES_PACKAGE),
            "Failed to install Hercules",
        )
        logger.info(f"{HERCULES_PACKAGE} installed")

    async def _install_playwright(self, progress: Optional[ProgressCallback]) -> None:
        if progress:
            progress("Installing Playwright browsers...")
        await self._run_step(
            self._python_command("-m", "playwright", "install", "--with-deps"),
            "Failed to install Playwright",
        )
        logger.info("Playwright browsers installed")

    async def _pull_image(self, image: str, progress: Optional[ProgressCallback]) -> None:
        if progress:
            progress(f"Pulling Docker image {image}...")
        await self._run_step(["docker", "pull", image], "Failed to pull Docker image")
        logger.info(f"Docker image {image} pulled")

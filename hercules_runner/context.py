import os
import logging
from pathlib import Path
from typing import Optional

from .cdp import CdpBrowserManager
from .config_store import ConfigStore, GlobalState
from .environment import CommandRunner, EnvironmentResolver
from .errors import ApiError
from .improve import GherkinImprover
from .orchestrator import ProcessOrchestrator, TerminalFactory
from .paths import PathResolver
from .terminal import OutputCallback, Terminal
from .utils import get_app_data_dir

logger = logging.getLogger(__name__)


class AppContext:
    """Holds the one instance of every component for a running CLI invocation.

    Components receive their collaborators from here at construction time
    instead of reaching for process-wide singletons.
    """

    def __init__(
        self,
        storage_dir: Optional[Path] = None,
        workspace_root: Optional[Path] = None,
        *,
        output_callback: Optional[OutputCallback] = None,
        chrome_path: Optional[str] = None,
        runner: Optional[CommandRunner] = None,
        terminal_factory: TerminalFactory = Terminal,
    ):
        self.storage_dir = storage_dir or get_app_data_dir()
        self.workspace_root = workspace_root

        self.config_store = ConfigStore(self.storage_dir)
        self.state = GlobalState(self.storage_dir)
        self.paths = PathResolver(self.config_store, self.storage_dir)
        self.environment = EnvironmentResolver(self.config_store, self.storage_dir, runner)
        self.orchestrator = ProcessOrchestrator(
            self.config_store,
            self.paths,
            self.environment,
            workspace_root=workspace_root,
            terminal_factory=terminal_factory,
            output_callback=output_callback,
        )
        self.browser = CdpBrowserManager(
            self.state, chrome_path or os.getenv("HERCULES_CHROME_PATH")
        )

    def gherkin_improver(self) -> GherkinImprover:
        api_key = os.getenv("OPENAI_API_KEY") or self.config_store.get_config().llm.api_key
        if not api_key:
            raise ApiError(
                "OpenAI API key is required to improve the Gherkin script. "
                "Set OPENAI_API_KEY or llm.apiKey."
            )
        return GherkinImprover(api_key)

"""Directory layout for Hercules projects.

All paths are derived from ``project.basePath`` in the configuration and are
recomputed on every call so they always reflect the current settings.
"""

import os
import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict

from .config_store import ConfigStore

logger = logging.getLogger(__name__)

BASE_PATH_TYPES = ("project", "input", "output", "testData", "logFiles", "proofs")


@dataclass(frozen=True)
class FolderSet:
    input: str
    output: str
    test_data: str
    log_files: str
    proofs: str

    def as_dict(self) -> Dict[str, str]:
        """Return the folders keyed by their logical names."""
        data = asdict(self)
        return {
            "input": data["input"],
            "output": data["output"],
            "testData": data["test_data"],
            "logFiles": data["log_files"],
            "proofs": data["proofs"],
        }

    @property
    def run_dir(self) -> Path:
        """Directory holding the stop signal and last-run marker."""
        return Path(self.output) / "run"


class PathResolver:
    def __init__(self, config_store: ConfigStore, storage_dir: Path):
        self.config_store = config_store
        self.storage_dir = storage_dir

    def get_base_path(self) -> str:
        base_path = self.config_store.get_config().project.base_path
        if not base_path:
            base_path = str(self.storage_dir / "hercules-data")
        return os.path.abspath(os.path.expanduser(base_path))

    def _folder_map(self) -> Dict[str, str]:
        project = self.config_store.get_config().project
        base_path = self.get_base_path()
        return {
            "project": base_path,
            "input": os.path.join(base_path, project.gherkin_scripts_path or "input"),
            "output": os.path.join(base_path, project.output_path or "output"),
            "testData": os.path.join(base_path, project.test_data_path or "test_data"),
            "logFiles": os.path.join(base_path, "log_files"),
            "proofs": os.path.join(base_path, "proofs"),
        }

    def create_folders(self) -> FolderSet:
        """Compute the folder layout and create any directory that is missing."""
        mapping = self._folder_map()
        for folder in mapping.values():
            Path(folder).mkdir(parents=True, exist_ok=True)
        logger.debug("Hercules folders ready under %s", mapping["project"])
        return FolderSet(
            input=mapping["input"],
            output=mapping["output"],
            test_data=mapping["testData"],
            log_files=mapping["logFiles"],
            proofs=mapping["proofs"],
        )

    def resolve_path(self, path_to_resolve: str, base_path_type: str = "project") -> str:
        """Resolve *path_to_resolve* against the folder named by *base_path_type*.

        Absolute paths are returned unchanged whatever the base type.
        """
        if os.path.isabs(path_to_resolve):
            return path_to_resolve
        if base_path_type not in BASE_PATH_TYPES:
            raise ValueError(
                f"Unknown base path type '{base_path_type}', "
                f"expected one of {', '.join(BASE_PATH_TYPES)}"
            )
        return os.path.join(self._folder_map()[base_path_type], path_to_resolve)

import logging
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

DEFAULT_LLM_MODEL = "gpt-4o"
DEFAULT_BROWSER = "chromium"
DEFAULT_DOCKER_IMAGE = "testzeus/hercules:latest"
HERCULES_PACKAGE = "testzeus-hercules"


def _camel_config(**kwargs: Any) -> ConfigDict:
    """Shared model config: camelCase on disk, snake_case in Python, unknown keys kept."""
    return ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        validate_assignment=True,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Execution environment
# ---------------------------------------------------------------------------


class EnvironmentType(str, Enum):
    """Substrate the Hercules runner is executed in."""

    LOCAL = "local"
    DOCKER = "docker"
    PYTHON_VENV = "python_venv"


ENVIRONMENT_LABELS: Dict[EnvironmentType, str] = {
    EnvironmentType.LOCAL: "Local Python",
    EnvironmentType.DOCKER: "Docker",
    EnvironmentType.PYTHON_VENV: "Python Virtual Environment",
}


class LocalEnvironment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["local"] = "local"


class DockerEnvironment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["docker"] = "docker"
    image: str = DEFAULT_DOCKER_IMAGE


class VirtualEnvEnvironment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["python_venv"] = "python_venv"
    path: Optional[str] = None


Environment = Union[LocalEnvironment, DockerEnvironment, VirtualEnvEnvironment]


class ExecutionEnvironmentOptions(BaseModel):
    """Persisted options describing where and how Hercules is executed."""

    model_config = _camel_config()

    environment_type: EnvironmentType = Field(
        default=EnvironmentType.LOCAL,
        description="One of 'local', 'docker' or 'python_venv'.",
    )
    docker_image: str = Field(default=DEFAULT_DOCKER_IMAGE)
    use_virtual_env: bool = False
    virtual_env_path: Optional[str] = Field(
        default=None,
        description="Assigned lazily under the storage dir the first time a venv is needed.",
    )
    install_if_missing: bool = True

    @field_validator("docker_image", mode="before")
    @classmethod
    def _default_image(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_DOCKER_IMAGE
        return value

    @property
    def uses_virtual_env(self) -> bool:
        return self.environment_type == EnvironmentType.PYTHON_VENV or self.use_virtual_env

    def as_environment(self) -> Environment:
        """Return the tagged view of these options for the active environment type."""
        if self.environment_type == EnvironmentType.DOCKER:
            return DockerEnvironment(image=self.docker_image)
        if self.environment_type == EnvironmentType.PYTHON_VENV:
            return VirtualEnvEnvironment(path=self.virtual_env_path)
        return LocalEnvironment()


# ---------------------------------------------------------------------------
# Configuration record
# ---------------------------------------------------------------------------


class LLMSettings(BaseModel):
    model_config = _camel_config(protected_namespaces=())

    model: str = DEFAULT_LLM_MODEL
    api_key: str = ""
    config_file: str = ""
    config_file_ref_key: str = ""


class ProjectSettings(BaseModel):
    model_config = _camel_config()

    base_path: str = ""
    gherkin_scripts_path: str = "input"
    output_path: str = "output"
    test_data_path: str = "test_data"


class BrowserSettings(BaseModel):
    model_config = _camel_config()

    browser_type: str = Field(default=DEFAULT_BROWSER, alias="type")
    headless: bool = True
    record_video: bool = True
    take_screenshots: bool = True
    resolution: str = ""
    run_device: str = ""
    capture_network: bool = False


class AdvancedSettings(BaseModel):
    model_config = _camel_config()

    load_extra_tools: bool = False
    telemetry_enabled: bool = True
    auto_mode: bool = False
    enable_playwright_tracing: bool = False
    execution_environment: ExecutionEnvironmentOptions = Field(
        default_factory=ExecutionEnvironmentOptions
    )


class HerculesConfig(BaseModel):
    """The full persisted configuration record."""

    model_config = _camel_config()

    llm: LLMSettings = Field(default_factory=LLMSettings)
    project: ProjectSettings = Field(default_factory=ProjectSettings)
    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    advanced: AdvancedSettings = Field(default_factory=AdvancedSettings)

    @classmethod
    def from_partial(cls, data: Dict[str, Any]) -> "HerculesConfig":
        """Build a config from a possibly partial dict, backfilling every missing key.

        ``null`` values are treated like absent keys so they fall back to the
        default instead of failing validation.
        """
        return cls.model_validate(_drop_nulls(data))

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def _drop_nulls(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _drop_nulls(v) for k, v in value.items() if v is not None}
    return value

import pytest

from conftest import FakeRunner, HERCULES_LISTED
from hercules_runner.config_store import ConfigStore
from hercules_runner.environment import EnvironmentResolver
from hercules_runner.errors import ConfigIO, InstallFailed, RuntimeUnavailable
from hercules_runner.serializers import (
    DEFAULT_DOCKER_IMAGE,
    DockerEnvironment,
    EnvironmentType,
    LocalEnvironment,
    VirtualEnvEnvironment,
)
from hercules_runner.utils import venv_executable


def make_resolver(storage_dir, runner):
    return EnvironmentResolver(ConfigStore(storage_dir), storage_dir, runner)


def test_set_options_persists(storage_dir, runner):
    resolver = make_resolver(storage_dir, runner)
    resolver.set_options(environment_type="docker", docker_image="custom/hercules:1.0")

    options = make_resolver(storage_dir, runner).get_options()
    assert options.environment_type == EnvironmentType.DOCKER
    assert options.docker_image == "custom/hercules:1.0"
    assert options.as_environment() == DockerEnvironment(image="custom/hercules:1.0")


def test_set_options_rejects_unknown_type(storage_dir, runner):
    resolver = make_resolver(storage_dir, runner)
    with pytest.raises(ConfigIO):
        resolver.set_options(environment_type="conda")


def test_empty_image_falls_back_to_default(storage_dir, runner):
    resolver = make_resolver(storage_dir, runner)
    assert resolver.set_options(docker_image="").docker_image == DEFAULT_DOCKER_IMAGE


def test_get_options_returns_copy(storage_dir, runner):
    resolver = make_resolver(storage_dir, runner)
    options = resolver.get_options()
    options.docker_image = "changed:latest"
    assert resolver.get_options().docker_image == DEFAULT_DOCKER_IMAGE


def test_environment_views(storage_dir, runner):
    resolver = make_resolver(storage_dir, runner)
    assert resolver.get_options().as_environment() == LocalEnvironment()
    assert resolver.get_environment_label() == "Local Python"

    resolver.set_options(environment_type="python_venv", virtual_env_path="/opt/venv")
    assert resolver.get_options().as_environment() == VirtualEnvEnvironment(path="/opt/venv")
    assert resolver.get_environment_label() == "Python Virtual Environment"


@pytest.mark.asyncio
async def test_python_falls_back_to_python3(storage_dir):
    runner = FakeRunner(
        {
            ("python", "--version"): FileNotFoundError("python"),
            ("python3", "--version"): (0, "Python 3.11.4", ""),
        }
    )
    resolver = make_resolver(storage_dir, runner)
    assert await resolver.is_runtime_available("python") is True
    assert resolver._python_command("-V") == ["python3", "-V"]


@pytest.mark.asyncio
async def test_unknown_runtime_kind(storage_dir, runner):
    with pytest.raises(ValueError):
        await make_resolver(storage_dir, runner).is_runtime_available("ruby")


@pytest.mark.asyncio
async def test_tool_check_never_raises(storage_dir):
    runner = FakeRunner({("pip", "list"): OSError("pip missing")})
    assert await make_resolver(storage_dir, runner).is_tool_available() is False


@pytest.mark.asyncio
async def test_docker_image_must_match_exactly(storage_dir):
    runner = FakeRunner(
        {("docker", "image", "ls"): (0, "testzeus/hercules:latest-dev\n", "")}
    )
    resolver = make_resolver(storage_dir, runner)
    resolver.set_options(environment_type="docker")
    assert await resolver.is_tool_available() is False


@pytest.mark.asyncio
async def test_docker_missing_does_not_pull(storage_dir):
    runner = FakeRunner({("docker", "--version"): (127, "", "docker: not found")})
    resolver = make_resolver(storage_dir, runner)
    resolver.set_options(environment_type="docker")

    with pytest.raises(RuntimeUnavailable):
        await resolver.ensure_ready()
    assert runner.called("docker", "pull") == []


@pytest.mark.asyncio
async def test_docker_pulls_missing_image(storage_dir, runner):
    resolver = make_resolver(storage_dir, runner)
    resolver.set_options(environment_type="docker")
    messages = []

    await resolver.ensure_ready(messages.append)

    assert runner.called("docker", "pull") == [["docker", "pull", DEFAULT_DOCKER_IMAGE]]
    assert messages == [f"Pulling Docker image {DEFAULT_DOCKER_IMAGE}..."]


@pytest.mark.asyncio
async def test_docker_present_image_is_not_pulled(storage_dir):
    runner = FakeRunner(
        {("docker", "image", "ls"): (0, DEFAULT_DOCKER_IMAGE + "\n", "")}
    )
    resolver = make_resolver(storage_dir, runner)
    resolver.set_options(environment_type="docker")
    await resolver.ensure_ready()
    assert runner.called("docker", "pull") == []


@pytest.mark.asyncio
async def test_python_missing(storage_dir):
    runner = FakeRunner(
        {
            ("python", "--version"): FileNotFoundError("python"),
            ("python3", "--version"): FileNotFoundError("python3"),
        }
    )
    with pytest.raises(RuntimeUnavailable):
        await make_resolver(storage_dir, runner).ensure_ready()


@pytest.mark.asyncio
async def test_local_installs_when_missing(storage_dir):
    runner = FakeRunner({("pip", "list"): (0, "Package  Version\nhttpx  0.27\n", "")})
    await make_resolver(storage_dir, runner).ensure_ready()

    assert runner.called("pip", "install") == [["pip", "install", "testzeus-hercules"]]
    assert runner.called("python", "-m", "playwright") == [
        ["python", "-m", "playwright", "install", "--with-deps"]
    ]


@pytest.mark.asyncio
async def test_local_install_skipped_when_disabled(storage_dir):
    runner = FakeRunner({("pip", "list"): (0, "", "")})
    resolver = make_resolver(storage_dir, runner)
    resolver.set_options(install_if_missing=False)
    await resolver.ensure_ready()
    assert runner.called("pip", "install") == []


@pytest.mark.asyncio
async def test_failed_install_raises(storage_dir):
    runner = FakeRunner(
        {
            ("pip", "list"): (0, "", ""),
            ("pip", "install"): (1, "", "ERROR: No matching distribution"),
        }
    )
    with pytest.raises(InstallFailed, match="No matching distribution"):
        await make_resolver(storage_dir, runner).ensure_ready()


@pytest.mark.asyncio
async def test_venv_path_assigned_and_created(storage_dir):
    venv_path = storage_dir / "venv"
    pip = str(venv_executable(str(venv_path), "pip"))
    runner = FakeRunner({(pip, "list"): (0, "", "")})
    resolver = make_resolver(storage_dir, runner)
    resolver.set_options(environment_type="python_venv")

    await resolver.ensure_ready()

    # The lazily assigned path is persisted
    reloaded = make_resolver(storage_dir, runner).get_options()
    assert reloaded.virtual_env_path == str(venv_path)
    assert runner.called("python", "-m", "venv") == [
        ["python", "-m", "venv", str(venv_path)]
    ]
    assert runner.called(pip, "install") == [[pip, "install", "testzeus-hercules"]]
    python = str(venv_executable(str(venv_path), "python"))
    assert runner.called(python, "-m", "playwright")


@pytest.mark.asyncio
async def test_existing_venv_is_reused(storage_dir, tmp_path):
    venv_path = tmp_path / "existing-venv"
    venv_path.mkdir()
    pip = str(venv_executable(str(venv_path), "pip"))
    runner = FakeRunner({(pip, "list"): (0, HERCULES_LISTED, "")})
    resolver = make_resolver(storage_dir, runner)
    resolver.set_options(environment_type="python_venv", virtual_env_path=str(venv_path))

    await resolver.ensure_ready()

    assert runner.called("python", "-m", "venv") == []
    assert runner.called(pip, "install") == []

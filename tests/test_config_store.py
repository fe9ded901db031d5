import json

import pytest

from hercules_runner.config_store import ConfigStore, GlobalState
from hercules_runner.errors import ConfigIO
from hercules_runner.serializers import DEFAULT_DOCKER_IMAGE, DEFAULT_LLM_MODEL, EnvironmentType


def write_config(storage_dir, data):
    (storage_dir / "hercules-config.json").write_text(json.dumps(data), encoding="utf-8")


def test_defaults_when_no_file(storage_dir):
    config = ConfigStore(storage_dir).get_config()
    assert config.llm.model == DEFAULT_LLM_MODEL
    assert config.project.gherkin_scripts_path == "input"
    assert config.browser.headless is True
    assert config.advanced.execution_environment.environment_type == EnvironmentType.LOCAL


def test_partial_file_is_backfilled(storage_dir):
    write_config(
        storage_dir,
        {
            "browser": {"headless": False},
            "advanced": {"executionEnvironment": {"environmentType": "docker"}},
        },
    )
    config = ConfigStore(storage_dir).get_config()
    assert config.browser.headless is False
    assert config.browser.record_video is True
    assert config.llm.model == DEFAULT_LLM_MODEL
    env = config.advanced.execution_environment
    assert env.environment_type == EnvironmentType.DOCKER
    assert env.docker_image == DEFAULT_DOCKER_IMAGE


def test_null_values_fall_back_to_defaults(storage_dir):
    write_config(storage_dir, {"llm": {"model": None}, "project": None})
    config = ConfigStore(storage_dir).get_config()
    assert config.llm.model == DEFAULT_LLM_MODEL
    assert config.project.output_path == "output"


def test_corrupt_file_loads_defaults(storage_dir):
    (storage_dir / "hercules-config.json").write_text("{not json", encoding="utf-8")
    config = ConfigStore(storage_dir).get_config()
    assert config.llm.model == DEFAULT_LLM_MODEL


def test_saved_file_uses_camel_case_keys(storage_dir):
    store = ConfigStore(storage_dir)
    store.save()
    data = json.loads(store.get_config_path().read_text(encoding="utf-8"))
    assert data["project"]["gherkinScriptsPath"] == "input"
    assert data["browser"]["type"] == "chromium"
    assert data["advanced"]["executionEnvironment"]["installIfMissing"] is True


@pytest.mark.parametrize("key", ["headless", "capture_network", "captureNetwork"])
def test_set_value_persists(storage_dir, key):
    store = ConfigStore(storage_dir)
    store.set_value("browser", key, True if key != "headless" else False)

    reloaded = ConfigStore(storage_dir)
    assert reloaded.get_value("browser", key) == store.get_value("browser", key)
    if key == "headless":
        assert reloaded.get_config().browser.headless is False
    else:
        assert reloaded.get_config().browser.capture_network is True


def test_set_value_rejects_invalid_value(storage_dir):
    store = ConfigStore(storage_dir)
    with pytest.raises(ConfigIO):
        store.set_value("browser", "headless", "sometimes")
    assert store.get_config().browser.headless is True


def test_unknown_section(storage_dir):
    store = ConfigStore(storage_dir)
    with pytest.raises(ConfigIO):
        store.set_value("nope", "x", 1)
    with pytest.raises(ConfigIO):
        store.get_value("nope", "x")


def test_reset_restores_defaults(storage_dir):
    store = ConfigStore(storage_dir)
    store.set_value("llm", "model", "gpt-4.1")
    store.reset()
    assert ConfigStore(storage_dir).get_config().llm.model == DEFAULT_LLM_MODEL


def test_global_state_round_trip(storage_dir):
    state = GlobalState(storage_dir)
    assert state.get("cdpBrowserRunning", False) is False
    state.update("lastCdpUrl", "ws://localhost:9333/devtools/browser/x")
    state.update_many({"cdpBrowserRunning": True, "cdpBrowserPid": 42})

    again = GlobalState(storage_dir)
    assert again.get("lastCdpUrl") == "ws://localhost:9333/devtools/browser/x"
    assert again.get("cdpBrowserRunning") is True
    assert again.get("cdpBrowserPid") == 42


def test_invalid_field_keeps_the_rest_of_the_file(storage_dir):
    write_config(
        storage_dir,
        {
            "llm": {"apiKey": "sk-user", "model": "gpt-4.1"},
            "project": {"basePath": "/srv/tests"},
            "browser": {"resolution": 1920, "headless": False},
            "advanced": {"executionEnvironment": {"environmentType": "conda"}},
        },
    )
    store = ConfigStore(storage_dir)
    config = store.get_config()
    assert config.llm.api_key == "sk-user"
    assert config.project.base_path == "/srv/tests"
    assert config.browser.headless is False
    assert config.browser.resolution == ""
    assert config.advanced.execution_environment.environment_type == EnvironmentType.LOCAL

    # A later save must not wipe the settings that were valid
    store.set_value("advanced", "autoMode", True)
    data = json.loads(store.get_config_path().read_text(encoding="utf-8"))
    assert data["llm"]["apiKey"] == "sk-user"
    assert data["llm"]["model"] == "gpt-4.1"
    assert data["project"]["basePath"] == "/srv/tests"


def test_non_object_section_is_replaced_by_defaults(storage_dir):
    write_config(storage_dir, {"llm": {"apiKey": "sk-user"}, "browser": 5})
    config = ConfigStore(storage_dir).get_config()
    assert config.llm.api_key == "sk-user"
    assert config.browser.headless is True


@pytest.mark.parametrize("key", ["headles", "browserType", "nope"])
def test_set_value_rejects_unknown_key(storage_dir, key):
    store = ConfigStore(storage_dir)
    with pytest.raises(ConfigIO, match="Unknown configuration key"):
        store.set_value("browser", key, False)
    assert not store.get_config_path().exists()


def test_field_name_maps_to_its_json_key(storage_dir):
    store = ConfigStore(storage_dir)
    store.set_value("browser", "browser_type", "firefox")
    assert store.get_config().browser.browser_type == "firefox"
    assert store.get_value("browser", "type") == "firefox"
    data = json.loads(store.get_config_path().read_text(encoding="utf-8"))
    assert data["browser"]["type"] == "firefox"
    assert "browser_type" not in data["browser"]

"""Engine configuration: file discovery, validation, and env overrides."""

from pathlib import Path

import pytest

from blockflow.engine import EngineSettings, SettingsLoader, ToolRegistry

ENV_NAMES = [
    "BLOCKFLOW_CONFIG",
    "BLOCKFLOW_CODE_EXECUTION_URL",
    "BLOCKFLOW_TOOL_SERVICE_URL",
    "BLOCKFLOW_FUNCTION_TIMEOUT_MS",
    "BLOCKFLOW_MAX_WORKFLOW_DEPTH",
    "BLOCKFLOW_WORKFLOW_PATHS",
]


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Clear BLOCKFLOW_* variables and point HOME at an empty directory."""
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


def write_config(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


class TestConfigDiscovery:
    """Config file location priority."""

    def test_defaults_without_file(self):
        loader = SettingsLoader()

        assert loader.get_config_path() is None
        settings = loader.load()
        assert settings == EngineSettings()
        assert settings.function_timeout_ms == 5000
        assert settings.max_workflow_depth == 10

    def test_standard_location(self, isolated_env: Path):
        path = write_config(isolated_env / ".blockflow" / "config.yml", "max_workflow_depth: 4\n")

        loader = SettingsLoader()

        assert loader.get_config_path() == path
        assert loader.load().max_workflow_depth == 4

    def test_env_path_beats_standard_location(
        self, isolated_env: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ):
        write_config(isolated_env / ".blockflow" / "config.yml", "max_workflow_depth: 4\n")
        env_path = write_config(tmp_path / "env.yml", "max_workflow_depth: 6\n")
        monkeypatch.setenv("BLOCKFLOW_CONFIG", str(env_path))

        assert SettingsLoader().load().max_workflow_depth == 6

    def test_explicit_path_beats_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        env_path = write_config(tmp_path / "env.yml", "max_workflow_depth: 6\n")
        explicit = write_config(tmp_path / "explicit.yml", "max_workflow_depth: 8\n")
        monkeypatch.setenv("BLOCKFLOW_CONFIG", str(env_path))

        assert SettingsLoader(explicit).load().max_workflow_depth == 8

    def test_missing_explicit_path_uses_defaults(self, tmp_path: Path):
        loader = SettingsLoader(tmp_path / "absent.yml")

        assert loader.get_config_path() is None
        assert loader.load() == EngineSettings()

    def test_settings_are_cached(self, tmp_path: Path):
        path = write_config(tmp_path / "c.yml", "max_workflow_depth: 3\n")
        loader = SettingsLoader(path)

        first = loader.load()
        path.write_text("max_workflow_depth: 9\n", encoding="utf-8")

        assert loader.load() is first


class TestConfigValidation:
    """Invalid files raise ValueError with the cause."""

    def test_tools_declared_in_file(self, tmp_path: Path):
        path = write_config(
            tmp_path / "c.yml",
            """
tools:
  - id: http_request
    name: HTTP Request
    params:
      url: {type: string, required: true}
      method: {default: GET}
""",
        )

        settings = SettingsLoader(path).load()
        registry = ToolRegistry(settings.tools)

        tool = registry.get("http_request")
        assert tool is not None
        assert tool.display_name == "HTTP Request"
        assert tool.required_params() == ["url"]
        assert tool.apply_defaults({"url": "u"}) == {"url": "u", "method": "GET"}

    def test_empty_file_uses_defaults(self, tmp_path: Path):
        path = write_config(tmp_path / "c.yml", "")

        assert SettingsLoader(path).load() == EngineSettings()

    def test_invalid_yaml(self, tmp_path: Path):
        path = write_config(tmp_path / "c.yml", "tools: [unclosed\n")

        with pytest.raises(ValueError, match="Failed to parse config"):
            SettingsLoader(path).load()

    def test_non_mapping(self, tmp_path: Path):
        path = write_config(tmp_path / "c.yml", "- a\n- b\n")

        with pytest.raises(ValueError, match="must contain a YAML mapping"):
            SettingsLoader(path).load()

    def test_unknown_key(self, tmp_path: Path):
        path = write_config(tmp_path / "c.yml", "max_depth: 3\n")

        with pytest.raises(ValueError, match="Invalid engine configuration"):
            SettingsLoader(path).load()

    def test_duplicate_tool_ids(self, tmp_path: Path):
        path = write_config(tmp_path / "c.yml", "tools:\n  - id: a\n  - id: a\n")

        with pytest.raises(ValueError, match="Duplicate tool id in config: a"):
            SettingsLoader(path).load()

    def test_out_of_range_value(self, tmp_path: Path):
        path = write_config(tmp_path / "c.yml", "function_timeout_ms: 0\n")

        with pytest.raises(ValueError, match="function_timeout_ms"):
            SettingsLoader(path).load()


class TestEnvironmentOverrides:
    """BLOCKFLOW_* variables overlay file values."""

    def test_service_urls(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        path = write_config(tmp_path / "c.yml", "tool_service_url: http://file/api\n")
        monkeypatch.setenv("BLOCKFLOW_TOOL_SERVICE_URL", "http://env/api")
        monkeypatch.setenv("BLOCKFLOW_CODE_EXECUTION_URL", "http://env/run")

        settings = SettingsLoader(path).load()

        assert settings.tool_service_url == "http://env/api"
        assert settings.code_execution_url == "http://env/run"

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("2500", 2500), ("0", 1), ("5000000", 900_000), ("soon", 5000)],
    )
    def test_function_timeout_clamped(self, raw, expected, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("BLOCKFLOW_FUNCTION_TIMEOUT_MS", raw)

        assert SettingsLoader().load().function_timeout_ms == expected

    @pytest.mark.parametrize(("raw", "expected"), [("3", 3), ("-1", 1), ("500", 100), ("x", 10)])
    def test_max_depth_clamped(self, raw, expected, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("BLOCKFLOW_MAX_WORKFLOW_DEPTH", raw)

        assert SettingsLoader().load().max_workflow_depth == expected

    def test_workflow_paths_appended(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        path = write_config(tmp_path / "c.yml", "workflow_paths: [/srv/flows]\n")
        monkeypatch.setenv("BLOCKFLOW_WORKFLOW_PATHS", " /a, ,/b ")

        settings = SettingsLoader(path).load()

        assert settings.workflow_paths == ["/srv/flows", "/a", "/b"]

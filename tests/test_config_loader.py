"""Tests for listing_sync.config_loader -- hierarchical config loading."""

import textwrap
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from listing_sync.config_loader import (
    _interpolate_recursive,
    _load_yaml_with_includes,
    discover_config_files,
    ensure_config,
    interpolate_env_vars,
    load_hierarchical_config,
    resolve_config_path,
)


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run with CWD and HOME inside tmp_path and no explicit config path."""
    monkeypatch.delenv("LISTING_SYNC_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    return tmp_path


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(text))
    return path


# -------------------------------------------------------------------------
# Env var interpolation
# -------------------------------------------------------------------------


class TestInterpolateEnvVars:
    """Tests for ${VAR} and ${VAR:-default} substitution."""

    def test_replaces_set_var(self, monkeypatch):
        monkeypatch.setenv("CRM_HOST", "crm.local")
        assert interpolate_env_vars("https://${CRM_HOST}/api") == (
            "https://crm.local/api"
        )

    def test_unset_var_replaced_with_empty(self, monkeypatch):
        monkeypatch.delenv("UNSET_VAR_XYZ", raising=False)
        assert interpolate_env_vars("${UNSET_VAR_XYZ}") == ""

    @pytest.mark.parametrize("value", [None, ""])
    def test_default_used_when_unset_or_empty(self, monkeypatch, value):
        if value is None:
            monkeypatch.delenv("CHUNK_XYZ", raising=False)
        else:
            monkeypatch.setenv("CHUNK_XYZ", value)
        assert interpolate_env_vars("${CHUNK_XYZ:-25}") == "25"

    def test_default_ignored_when_set(self, monkeypatch):
        monkeypatch.setenv("CHUNK_XYZ", "50")
        assert interpolate_env_vars("${CHUNK_XYZ:-25}") == "50"

    def test_literal_dollar_brace_no_closing(self):
        assert interpolate_env_vars("${NO_CLOSE") == "${NO_CLOSE"

    def test_nested_structures(self, monkeypatch):
        monkeypatch.setenv("API_PASS", "s3cret")
        data = {
            "api": {"password": "${API_PASS}", "request_timeout": 300},
            "tags": ["${API_PASS}", 7],
        }
        assert _interpolate_recursive(data) == {
            "api": {"password": "s3cret", "request_timeout": 300},
            "tags": ["s3cret", 7],
        }


# -------------------------------------------------------------------------
# YAML !include support
# -------------------------------------------------------------------------


class TestIncludeDirective:
    """Tests for !include YAML loading via the ConfigLoader subclass."""

    def test_include_relative_file(self, tmp_path):
        _write(tmp_path / "secrets.yml", "password: hunter2\n")
        main = _write(tmp_path / "config.yml", "api: !include secrets.yml\n")

        assert _load_yaml_with_includes(main) == {
            "api": {"password": "hunter2"}
        }

    def test_include_absolute_path(self, tmp_path):
        secrets = _write(tmp_path / "sub" / "secrets.yml", "token: abc\n")
        main = _write(tmp_path / "config.yml", f"auth: !include {secrets}\n")

        assert _load_yaml_with_includes(main) == {"auth": {"token": "abc"}}

    def test_include_nonexistent_raises(self, tmp_path):
        main = _write(tmp_path / "config.yml", "api: !include missing.yml\n")

        with pytest.raises(FileNotFoundError, match="missing.yml"):
            _load_yaml_with_includes(main)

    def test_circular_include_raises(self, tmp_path):
        a = _write(tmp_path / "a.yml", "x: !include b.yml\n")
        _write(tmp_path / "b.yml", "y: !include a.yml\n")

        with pytest.raises(ValueError, match="Circular include"):
            _load_yaml_with_includes(a)

    def test_nested_includes(self, tmp_path):
        _write(tmp_path / "c.yml", "val: deep\n")
        _write(tmp_path / "b.yml", "inner: !include c.yml\n")
        a = _write(tmp_path / "a.yml", "outer: !include b.yml\n")

        assert _load_yaml_with_includes(a) == {
            "outer": {"inner": {"val": "deep"}}
        }

    def test_global_safe_loader_not_polluted(self, tmp_path):
        """!include is NOT registered on yaml.SafeLoader."""
        cfg = _write(tmp_path / "test.yml", "x: !include other.yml\n")

        with pytest.raises(yaml.constructor.ConstructorError):
            with open(cfg) as fh:
                yaml.safe_load(fh)


# -------------------------------------------------------------------------
# Convention-based file discovery
# -------------------------------------------------------------------------


class TestDiscoverConfigFiles:
    def test_env_var_takes_highest_precedence(self, isolated, monkeypatch):
        custom = _write(isolated / "custom.yml", "api: {}\n")
        _write(isolated / ".listing_sync" / "config.yml", "api: {}\n")
        monkeypatch.setenv("LISTING_SYNC_CONFIG", str(custom))

        result = discover_config_files()

        assert result[0] == custom.resolve()
        assert len(result) == 2

    def test_project_before_global(self, isolated):
        proj = _write(isolated / ".listing_sync" / "config.yml", "a: 1\n")
        xdg = _write(
            isolated / "home" / ".config" / "listing_sync" / "config.yml",
            "b: 2\n",
        )

        assert discover_config_files() == [proj, xdg]

    def test_yaml_extension_discovered(self, isolated):
        alt = _write(isolated / ".listing_sync" / "config.yaml", "a: 1\n")

        assert discover_config_files() == [alt]

    def test_missing_files_excluded(self, isolated):
        assert discover_config_files() == []


# -------------------------------------------------------------------------
# Hierarchical merge
# -------------------------------------------------------------------------


class TestLoadHierarchicalConfig:
    def test_project_overrides_global_at_section_level(self, isolated):
        _write(
            isolated / "home" / ".config" / "listing_sync" / "config.yml",
            """\
            api:
              url: https://global.example.com
              username: globaluser
            sync:
              chunk_size: 10
            """,
        )
        _write(
            isolated / ".listing_sync" / "config.yml",
            """\
            api:
              url: https://project.example.com
            """,
        )

        result = load_hierarchical_config()

        # Shallow merge: the project api section replaces the global one
        assert result["api"] == {"url": "https://project.example.com"}
        assert result["sync"] == {"chunk_size": 10}

    def test_env_var_interpolation_after_merge(self, isolated, monkeypatch):
        monkeypatch.setenv("MY_SECRET", "s3cret")
        _write(
            isolated / ".listing_sync" / "config.yml",
            """\
            api:
              password: "${MY_SECRET}"
            """,
        )

        assert load_hierarchical_config()["api"]["password"] == "s3cret"

    def test_include_within_merged_config(self, isolated):
        _write(isolated / ".listing_sync" / "secrets.yml", "password: pw\n")
        _write(
            isolated / ".listing_sync" / "config.yml",
            """\
            api: !include secrets.yml
            storage:
              data_dir: /data
            """,
        )

        result = load_hierarchical_config()

        assert result["api"] == {"password": "pw"}
        assert result["storage"]["data_dir"] == "/data"

    def test_zero_config_returns_empty_dict(self, isolated):
        assert load_hierarchical_config() == {}

    def test_non_dict_root_skipped(self, isolated, monkeypatch):
        bad = _write(isolated / "bad.yml", "- item1\n- item2\n")
        monkeypatch.setenv("LISTING_SYNC_CONFIG", str(bad))

        assert load_hierarchical_config() == {}

    def test_invalid_yaml_raises(self, isolated):
        _write(isolated / ".listing_sync" / "config.yml", "api: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_hierarchical_config()


# -------------------------------------------------------------------------
# Config bootstrapping
# -------------------------------------------------------------------------


class TestResolveConfigPath:
    def test_returns_highest_precedence(self):
        project_path = Path("/project/.listing_sync/config.yml")
        global_path = Path("/home/user/.config/listing_sync/config.yml")

        with patch(
            "listing_sync.config_loader.discover_config_files",
            return_value=[project_path, global_path],
        ):
            assert resolve_config_path() == project_path

    def test_returns_default_when_no_files(self, isolated):
        assert resolve_config_path() == (
            isolated / ".listing_sync" / "config.yml"
        )


class TestEnsureConfig:
    def test_noop_when_exists(self, isolated):
        existing = Path("/fake/existing/config.yml")

        with patch(
            "listing_sync.config_loader.discover_config_files",
            return_value=[existing],
        ):
            assert ensure_config() == existing

        assert not (isolated / ".listing_sync").exists()

    def test_creates_starter_file(self, isolated):
        result = ensure_config()

        assert result == isolated / ".listing_sync" / "config.yml"
        content = result.read_text()
        assert "# listing-sync configuration" in content
        assert "# api:" in content
        assert "# sync:" in content

    def test_starter_file_is_valid_yaml(self, isolated):
        # Every line is commented out, so it loads as an empty document
        assert yaml.safe_load(ensure_config().read_text()) is None

    def test_uses_explicit_target(self, isolated):
        target = isolated / "a" / "b" / "my-config.yml"

        assert ensure_config(target=target) == target
        assert target.is_file()

"""Tests for configuration loading and validation."""

import pytest

from swapguard.config import DEFAULT_CONFIG, load_config, load_config_from_dict
from swapguard.config.loader import _deep_merge
from swapguard.core.status import Strategy
from swapguard.exceptions import ConfigFileNotFoundError, ConfigValidationError


class TestDefaults:
    """Defaults describe the single-host development deployment."""

    def test_defaults_validate(self):
        """Test the defaults validate and name the dev deployment."""
        config = load_config_from_dict({})
        assert config.service.backend_unit == "deepsplit_be-dev"
        assert config.network.host_port == 33371
        assert config.network.backend_port == 33373
        assert config.network.routing_volume == "swapguard_routing"
        assert config.storage.data_volume == "data"
        assert config.storage.binary_volume == "server_binary"
        assert config.replication.unit == "litestream-dev"
        assert config.rollback.strategy is Strategy.BLUE_GREEN

    def test_database_paths(self):
        """Test database paths inside the backend unit."""
        storage = load_config_from_dict({}).storage
        assert storage.database_path == "/data/deepsplit.sqlite"
        assert storage.staging_path == "/data/deepsplit-restored.sqlite"

    def test_derived_unit_names(self):
        """Test candidate and parked unit names."""
        service = load_config_from_dict({}).service
        assert service.candidate_unit == "deepsplit_be-dev-candidate"
        assert service.parked_unit == "deepsplit_be-dev-previous"
        assert service.forwarder_unit == "deepsplit_be-dev-forwarder"

    def test_default_health_query(self):
        """Test the default GraphQL health query."""
        health = load_config_from_dict({}).health
        assert health.query == "{ currencies { displayName } }"
        assert health.data_key == "currencies"
        assert health.empty_sentinel == "[]"

    def test_default_config_untouched_by_merge(self):
        """Test merging never mutates the defaults."""
        load_config_from_dict({"service": {"name": "other"}})
        assert DEFAULT_CONFIG["service"]["name"] == "deepsplit"


class TestDeepMerge:
    def test_nested_override(self):
        """Test nested keys merge instead of replacing."""
        merged = _deep_merge({"a": {"b": 1, "c": 2}}, {"a": {"c": 3}})
        assert merged == {"a": {"b": 1, "c": 3}}

    def test_non_dict_replaces(self):
        """Test a scalar replaces a mapping."""
        assert _deep_merge({"a": {"b": 1}}, {"a": None}) == {"a": None}


class TestValidation:
    """Invalid configurations fail with ConfigValidationError."""

    def test_same_port_for_candidate_rejected(self):
        """Test the candidate cannot share the public port."""
        with pytest.raises(ConfigValidationError):
            load_config_from_dict(
                {"network": {"host_port": 9000, "candidate_port": 9000}}
            )

    def test_port_out_of_range(self):
        """Test ports above 65535 are rejected."""
        with pytest.raises(ConfigValidationError):
            load_config_from_dict({"network": {"host_port": 70000}})

    def test_database_file_must_be_bare_name(self):
        """Test database_file cannot contain a directory."""
        with pytest.raises(ConfigValidationError):
            load_config_from_dict({"storage": {"database_file": "sub/db.sqlite"}})

    def test_staging_file_must_differ(self):
        """Test the staging file cannot be the live file."""
        with pytest.raises(ConfigValidationError):
            load_config_from_dict(
                {"storage": {"staging_file": "deepsplit.sqlite"}}
            )

    def test_volumes_must_differ(self):
        """Test data and binary volumes must differ."""
        with pytest.raises(ConfigValidationError):
            load_config_from_dict({"storage": {"binary_volume": "data"}})

    def test_checkpoints_require_recreate(self):
        """Test checkpoints are refused with blue/green."""
        with pytest.raises(ConfigValidationError):
            load_config_from_dict({"rollback": {"use_checkpoints": True}})

    def test_checkpoints_with_recreate(self):
        """Test checkpoints are allowed with recreate."""
        config = load_config_from_dict(
            {"rollback": {"strategy": "recreate", "use_checkpoints": True}}
        )
        assert config.rollback.strategy is Strategy.RECREATE
        assert config.rollback.use_checkpoints is True

    def test_unknown_strategy(self):
        """Test an unknown rollback strategy."""
        with pytest.raises(ConfigValidationError):
            load_config_from_dict({"rollback": {"strategy": "canary"}})

    def test_health_path_gets_leading_slash(self):
        """Test the health path is normalized."""
        config = load_config_from_dict({"health": {"path": "graphql"}})
        assert config.health.path == "/graphql"

    def test_zero_attempts_rejected(self):
        """Test at least one health attempt is required."""
        with pytest.raises(ConfigValidationError):
            load_config_from_dict({"health": {"max_attempts": 0}})

    def test_backend_port_must_differ(self):
        """Test the backend port cannot be the public port."""
        with pytest.raises(ConfigValidationError, match="must all differ"):
            load_config_from_dict({"network": {"backend_port": 33371}})


class TestLoadConfig:
    def test_missing_file(self, tmp_path):
        """Test a missing configuration file."""
        with pytest.raises(ConfigFileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_yaml_file(self, tmp_path):
        """Test loading overrides from YAML."""
        path = tmp_path / "swapguard.yaml"
        path.write_text(
            "service:\n"
            "  name: billing\n"
            "network:\n"
            "  host_port: 40000\n"
            "  candidate_port: 40001\n"
            "rollback:\n"
            "  strategy: recreate\n"
        )
        config = load_config(str(path))
        assert config.service.name == "billing"
        assert config.network.host_port == 40000
        assert config.rollback.strategy is Strategy.RECREATE
        # Untouched sections keep their defaults
        assert config.storage.data_volume == "data"

    def test_empty_file_uses_defaults(self, tmp_path):
        """Test an empty file yields the defaults."""
        path = tmp_path / "swapguard.yaml"
        path.write_text("")
        assert load_config(str(path)).service.name == "deepsplit"

    def test_invalid_yaml(self, tmp_path):
        """Test malformed YAML."""
        path = tmp_path / "swapguard.yaml"
        path.write_text("service: [unclosed\n")
        with pytest.raises(ConfigValidationError):
            load_config(str(path))

    def test_non_mapping(self, tmp_path):
        """Test a top-level list is rejected."""
        path = tmp_path / "swapguard.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigValidationError, match="mapping"):
            load_config(str(path))


class TestLedgerPath:
    def test_default_under_home(self, monkeypatch, tmp_path):
        """Test the ledger defaults to the home directory."""
        monkeypatch.setenv("HOME", str(tmp_path))
        config = load_config_from_dict({})
        assert config.ledger.resolved_path() == str(
            tmp_path / ".swapguard" / "ledger.db"
        )

    def test_explicit_path(self, tmp_path):
        """Test an explicit ledger path."""
        config = load_config_from_dict({"ledger": {"path": str(tmp_path / "x.db")}})
        assert config.ledger.resolved_path() == str(tmp_path / "x.db")


class TestHostPaths:
    """Relative host paths in a file are anchored at the file's directory."""

    def _write(self, tmp_path, body):
        directory = tmp_path / "deploy"
        directory.mkdir()
        path = directory / "swapguard.yaml"
        path.write_text(body)
        return directory, path

    def test_relative_paths_resolved(self, tmp_path, monkeypatch):
        """Test relative paths do not depend on the working directory."""
        directory, path = self._write(
            tmp_path,
            "storage:\n"
            "  archive_dir: backups\n"
            "environment:\n"
            "  env_file: secrets/.env\n"
            "ledger:\n"
            "  path: state/ledger.db\n",
        )
        monkeypatch.chdir(tmp_path)
        config = load_config(str(path))
        assert config.storage.archive_dir == str(directory / "backups")
        assert config.storage.config_dir == str(directory / "config")
        assert config.environment.env_file == str(directory / "secrets" / ".env")
        assert config.ledger.resolved_path() == str(directory / "state" / "ledger.db")

    def test_absolute_paths_kept(self, tmp_path):
        """Test absolute paths are left as written."""
        _, path = self._write(
            tmp_path, f"storage:\n  archive_dir: {tmp_path / 'elsewhere'}\n"
        )
        config = load_config(str(path))
        assert config.storage.archive_dir == str(tmp_path / "elsewhere")

    def test_unset_paths_kept(self, tmp_path):
        """Test an unset env file and ledger stay unset."""
        _, path = self._write(tmp_path, "environment:\n  env_file: null\n")
        config = load_config(str(path))
        assert config.environment.env_file is None
        assert config.ledger.path is None

    def test_home_expanded(self, tmp_path, monkeypatch):
        """Test a leading ~ expands to the home directory."""
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        _, path = self._write(tmp_path, "ledger:\n  path: ~/ledger.db\n")
        config = load_config(str(path))
        assert config.ledger.path == str(tmp_path / "home" / "ledger.db")

    def test_dict_without_base_dir(self):
        """Test a plain dictionary keeps relative paths as written."""
        config = load_config_from_dict({"storage": {"archive_dir": "backups"}})
        assert config.storage.archive_dir == "backups"
        assert config.storage.config_dir == "./config"

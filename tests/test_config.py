"""
Tests for configuration loading and validation.
"""

import pytest

from repoindex.config import Config, RepositoryConfig
from repoindex.utils import ConfigError

ENV_VARS = [
    "QDRANT_URL", "QDRANT_HOST", "QDRANT_PORT", "QDRANT_API_KEY",
    "REPOINDEX_STATE_PATH", "EMBED_MODEL", "EMBED_DEVICE",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)


class TestConfigDefaults:
    """Test built-in defaults."""

    def test_defaults_are_valid(self):
        config = Config()

        assert config.validate() == []
        assert config.qdrant.rest_url == "http://localhost:6333"
        assert config.sync.verify_remote is False

    def test_collection_derived_from_name(self):
        repo = RepositoryConfig(root=".", name="demo")

        assert repo.collection_name == "repo_demo"

    def test_name_derived_from_root(self, tmp_path):
        root = tmp_path / "my-project"
        root.mkdir()

        repo = RepositoryConfig(root=str(root))

        assert repo.name == "my-project"
        assert repo.collection_name == "repo_my-project"

    def test_missing_defaults_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))

        assert Config.load().embedding.vector_size == 384


class TestConfigLoading:
    """Test YAML loading."""

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "repoindex.yaml"
        path.write_text(
            "repository:\n"
            "  root: /srv/code\n"
            "  name: code\n"
            "sync:\n"
            "  batch_size: 10\n"
            "  verify_remote: true\n"
        )

        config = Config.load(path)

        assert config.repository.collection_name == "repo_code"
        assert config.sync.batch_size == 10
        assert config.sync.verify_remote is True
        assert config.embedding.batch_size == 32

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert Config.load(path).sync.max_attempts == 4

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            Config.load(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("sync: [unclosed\n")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            Config.load(path)

    def test_root_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigError, match="mapping"):
            Config.load(path)

    def test_unknown_section(self):
        with pytest.raises(ConfigError, match="Unknown config sections: slack"):
            Config.from_dict({"slack": {}})

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="Unknown keys in 'sync': retries"):
            Config.from_dict({"sync": {"retries": 3}})

    def test_section_must_be_mapping(self):
        with pytest.raises(ConfigError, match="must be a mapping"):
            Config.from_dict({"scan": ["a"]})


class TestEnvOverrides:
    """Test environment variable overrides."""

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("QDRANT_URL", "http://qdrant:6333")
        monkeypatch.setenv("QDRANT_PORT", "7000")
        monkeypatch.setenv("REPOINDEX_STATE_PATH", "/tmp/state.db")
        monkeypatch.setenv("EMBED_MODEL", "BAAI/bge-small-en-v1.5")

        config = Config.from_dict({})

        assert config.qdrant.rest_url == "http://qdrant:6333"
        assert config.qdrant.port == 7000
        assert config.state.path == "/tmp/state.db"
        assert config.embedding.model_name == "BAAI/bge-small-en-v1.5"

    def test_bad_port(self, monkeypatch):
        monkeypatch.setenv("QDRANT_PORT", "not-a-port")

        with pytest.raises(ConfigError, match="QDRANT_PORT"):
            Config.from_dict({})


class TestValidation:
    """Test validate()."""

    def test_reports_every_problem(self):
        config = Config.from_dict({
            "embedding": {"max_chunk_chars": 200, "chunk_overlap_chars": 300, "batch_size": 0},
            "sync": {"max_attempts": 0, "run_timeout_seconds": -1},
            "qdrant": {"distance": "HAMMING"},
        })

        errors = config.validate()

        assert "embedding.chunk_overlap_chars must be smaller than max_chunk_chars" in errors
        assert "embedding.batch_size must be positive" in errors
        assert "sync.max_attempts must be at least 1" in errors
        assert "sync.run_timeout_seconds must be positive" in errors
        assert "qdrant.distance not supported: HAMMING" in errors
        assert len(errors) == 5


class TestRepositoryOverride:
    """Test command-line overrides of the repository section."""

    def test_explicit_values_survive_new_root(self, tmp_path):
        repo = RepositoryConfig(root="/srv/code", name="myproject", collection_name="repo_myproject")

        repo.override(root=tmp_path / "checkout")

        assert repo.root == str(tmp_path / "checkout")
        assert repo.name == "myproject"
        assert repo.collection_name == "repo_myproject"

    def test_derived_values_follow_new_root(self, tmp_path):
        repo = RepositoryConfig(root=str(tmp_path / "old"))

        repo.override(root=tmp_path / "new")

        assert repo.name == "new"
        assert repo.collection_name == "repo_new"

    def test_derived_collection_follows_name(self):
        repo = RepositoryConfig(root=".", name="demo")

        repo.override(name="renamed")

        assert repo.collection_name == "repo_renamed"

    def test_explicit_collection_wins(self):
        repo = RepositoryConfig(root=".", name="demo", collection_name="shared")

        repo.override(name="renamed", collection_name="other")

        assert repo.name == "renamed"
        assert repo.collection_name == "other"

    def test_no_overrides(self):
        repo = RepositoryConfig(root=".", name="demo", collection_name="shared")

        repo.override()

        assert (repo.name, repo.collection_name) == ("demo", "shared")


class TestQdrantTarget:

    def test_target_and_exclusive_local_modes(self, tmp_path):
        config = Config.from_dict({"qdrant": {"path": str(tmp_path / "qdrant")}})

        assert config.qdrant.embedded
        assert config.qdrant.target == str(tmp_path / "qdrant")
        assert Config().qdrant.target == "http://localhost:6333"

        config.qdrant.location = ":memory:"
        assert "qdrant.location and qdrant.path are mutually exclusive" in config.validate()

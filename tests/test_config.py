"""Tests for storyforge.lib.config module."""

from storyforge.lib.config import (
    CONFIG_FILE_NAME,
    Config,
    clamp_review_max,
    load_config,
    state_dir,
)


def _write_config(tmp_path, text):
    sdir = state_dir(tmp_path)
    sdir.mkdir(parents=True, exist_ok=True)
    (sdir / CONFIG_FILE_NAME).write_text(text)


class TestDefaults:
    def test_defaults(self):
        config = Config()
        assert config.agent_command == "claude"
        assert config.review_max == 3
        assert config.timeout_seconds == 1800
        assert config.remote == "origin"
        assert config.review and config.commit and config.pull_request
        assert not config.unrestricted

    def test_agent_argv_split(self):
        assert Config(agent_command="npx claude --model x").agent_argv == ["npx", "claude", "--model", "x"]


class TestReviewMaxClamp:
    def test_zero_clamped_to_one(self, caplog):
        assert Config(review_max=0).review_max == 1
        assert "out of range" in caplog.text

    def test_large_clamped_to_ten(self):
        assert clamp_review_max(99) == 10

    def test_in_range_unchanged(self):
        assert clamp_review_max(5) == 5

    def test_override_is_clamped(self):
        assert Config().with_overrides(review_max=0).review_max == 1


class TestOverrides:
    def test_none_values_ignored(self):
        config = Config(timeout_seconds=60).with_overrides(timeout_seconds=None, unrestricted=True)
        assert config.timeout_seconds == 60
        assert config.unrestricted


class TestLoadConfig:
    def test_no_workdir(self):
        assert load_config(None) == Config()

    def test_missing_file(self, tmp_path):
        assert load_config(tmp_path) == Config()

    def test_loads_values(self, tmp_path):
        _write_config(tmp_path, "review_max: 5\npull_request: false\nagent_command: my-claude\n")
        config = load_config(tmp_path)
        assert config.review_max == 5
        assert config.pull_request is False
        assert config.agent_command == "my-claude"

    def test_empty_file(self, tmp_path):
        _write_config(tmp_path, "")
        assert load_config(tmp_path) == Config()

    def test_invalid_yaml_warns(self, tmp_path, caplog):
        _write_config(tmp_path, "review_max: [unclosed\n")
        assert load_config(tmp_path) == Config()
        assert "Failed to parse" in caplog.text

    def test_not_a_mapping(self, tmp_path, caplog):
        _write_config(tmp_path, "- a\n- b\n")
        assert load_config(tmp_path) == Config()
        assert "expected a mapping" in caplog.text

    def test_unknown_key_ignored(self, tmp_path, caplog):
        _write_config(tmp_path, "bogus: 1\nreview_max: 2\n")
        config = load_config(tmp_path)
        assert config.review_max == 2
        assert "unknown config key 'bogus'" in caplog.text

    def test_wrong_type_ignored(self, tmp_path, caplog):
        _write_config(tmp_path, "review_max: lots\ncommit: 1\n")
        config = load_config(tmp_path)
        assert config.review_max == 3
        assert config.commit is True
        assert "expected int" in caplog.text
        assert "expected bool" in caplog.text

    def test_bool_is_not_an_int(self, tmp_path):
        _write_config(tmp_path, "timeout_seconds: true\n")
        assert load_config(tmp_path).timeout_seconds == 1800

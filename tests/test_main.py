"""
Unit tests for configuration loading.
"""

import pytest

from mirror.main import MIRROR_DEFAULTS, load_config


def _write(tmp_path, text):
    path = tmp_path / "settings.toml"
    path.write_text(text)
    return path


class TestLoadConfig:
    def test_defaults_filled_in(self, tmp_path):
        path = _write(tmp_path, '[database]\nhost = "localhost"\nname = "tg_mirror"\n')

        config = load_config(path)

        assert config["database"]["host"] == "localhost"
        assert config["mirror"] == MIRROR_DEFAULTS

    def test_overrides_merge_with_defaults(self, tmp_path):
        path = _write(
            tmp_path,
            '[database]\nhost = "db"\n\n[mirror]\nsync_interval_seconds = 120\nencrypted_sessions = false\n',
        )

        config = load_config(path)

        assert config["mirror"]["sync_interval_seconds"] == 120
        assert config["mirror"]["encrypted_sessions"] is False
        assert config["mirror"]["on_demand_history_limit"] == 100

    def test_missing_database_section(self, tmp_path):
        path = _write(tmp_path, "[mirror]\nsync_interval_seconds = 60\n")
        with pytest.raises(KeyError, match="database"):
            load_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.toml")

    @pytest.mark.parametrize("key", ["sync_interval_seconds", "watermark_lookback", "max_live_connections"])
    def test_non_positive_values_rejected(self, tmp_path, key):
        path = _write(tmp_path, f'[database]\nhost = "db"\n\n[mirror]\n{key} = 0\n')
        with pytest.raises(ValueError, match=key):
            load_config(path)

    def test_zero_history_delay_allowed(self, tmp_path):
        path = _write(tmp_path, '[database]\nhost = "db"\n\n[mirror]\nhistory_delay_seconds = 0\n')
        assert load_config(path)["mirror"]["history_delay_seconds"] == 0

    def test_negative_history_delay_rejected(self, tmp_path):
        path = _write(tmp_path, '[database]\nhost = "db"\n\n[mirror]\nhistory_delay_seconds = -1\n')
        with pytest.raises(ValueError):
            load_config(path)

import pytest

from crossmatrix.config import apply_env_overrides, find_config_file, load_config
from crossmatrix.errors import ConfigError, ConfigFileNotFound


@pytest.fixture(autouse=True)
def _isolated(monkeypatch, tmp_path):
    monkeypatch.delenv("CROSSMATRIX_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults_without_file():
    cfg = load_config(env={})
    assert cfg.quote == "USDT"
    assert cfg.bases == []
    assert cfg.tick_interval == 40.0
    assert cfg.tick_deadline == pytest.approx(36.0)
    assert cfg.flip_rel_eps == 0.05
    assert cfg.frozen.mid == 3


def test_load_toml(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        """
[crossmatrix]
quote = "usdt"
bases = ["btc", "eth", "BTC"]
tick_interval = 30
binance_base_url = "https://api.test/"

[crossmatrix.frozen]
recent = 2
mid = 4
long = 8
"""
    )
    cfg = load_config(path, env={})
    assert cfg.bases == ["BTC", "ETH"]
    assert cfg.tick_deadline == pytest.approx(27.0)
    assert cfg.binance_base_url == "https://api.test"
    assert cfg.frozen.long == 8


def test_load_yaml_found_in_cwd(tmp_path):
    (tmp_path / "config.yaml").write_text("bases: SOL,ADA\ntick_deadline: 10\n")
    assert find_config_file() == tmp_path / "config.yaml"
    cfg = load_config(env={})
    assert cfg.bases == ["SOL", "ADA"]
    assert cfg.tick_deadline == 10


def test_env_overrides_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('bases = ["BTC"]\nlog_level = "INFO"\n')
    cfg = load_config(
        path,
        env={"MATRICES_BASES": "eth, bnb", "LOG_JSON": "yes", "PRICE_RETRY_ATTEMPTS": "5", "LOG_LEVEL": " "},
    )
    assert cfg.bases == ["ETH", "BNB"]
    assert cfg.log_json is True
    assert cfg.retry_attempts == 5
    assert cfg.log_level == "INFO"


def test_apply_env_overrides_ignores_unknown():
    merged = apply_env_overrides({"quote": "USDT"}, {"UNRELATED": "1", "MATRIX_TICK_INTERVAL": "15"})
    assert merged == {"quote": "USDT", "tick_interval": "15"}


@pytest.mark.parametrize(
    "body",
    [
        "tick_interval = 0\n",
        'binance_base_url = "ftp://x"\n',
        "[frozen]\nrecent = 3\nmid = 2\nlong = 6\n",
        "tick_interval = [\n",
    ],
)
def test_invalid_config_raises(tmp_path, body):
    path = tmp_path / "config.toml"
    path.write_text(body)
    with pytest.raises(ConfigError):
        load_config(path, env={})


def test_missing_explicit_path(tmp_path, monkeypatch):
    with pytest.raises(ConfigFileNotFound):
        load_config(tmp_path / "nope.toml", env={})
    monkeypatch.setenv("CROSSMATRIX_CONFIG", str(tmp_path / "gone.yaml"))
    with pytest.raises(ConfigFileNotFound):
        find_config_file()


def test_non_mapping_yaml(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_config(path, env={})

import dataclasses

import pytest

from breakout_scanner.config import ConfigError, default_config, load_config, validate_config


def _write(tmp_path, text):
    p = tmp_path / "config.yaml"
    p.write_text(text, encoding="utf-8")
    return str(p)


def test_load_config_fills_defaults(tmp_path, monkeypatch):
    for key in ("TELEGRAM_TOKEN", "TELEGRAM_CHAT_IDS", "WEBHOOK_URL", "WEBHOOK_SECRET", "SCAN_CONCURRENCY"):
        monkeypatch.delenv(key, raising=False)
    path = _write(tmp_path, "strategy:\n  variant: fakeout\nrisk:\n  risk_reward: 3.0\n")

    cfg = load_config(path)

    assert cfg.strategy.variant == "fakeout"
    assert cfg.strategy.compression_bars == 40
    assert cfg.risk.risk_reward == 3.0
    assert cfg.provider.symbols == []
    assert cfg.telegram.chat_ids == []
    assert cfg.webhook.headers == {}


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("TELEGRAM_TOKEN", "abc")
    monkeypatch.setenv("TELEGRAM_CHAT_IDS", "1, 2,,3")
    monkeypatch.setenv("SCAN_CONCURRENCY", "4")
    monkeypatch.setenv("WEBHOOK_URL", "https://example.invalid/hook")

    cfg = load_config(_write(tmp_path, "app:\n  name: test\n"))

    assert cfg.telegram.token == "abc"
    assert cfg.telegram.chat_ids == ["1", "2", "3"]
    assert cfg.scan.concurrency == 4
    assert cfg.webhook.url == "https://example.invalid/hook"


def test_empty_file_is_default_config(tmp_path, monkeypatch):
    monkeypatch.delenv("SCAN_CONCURRENCY", raising=False)
    cfg = load_config(_write(tmp_path, ""))
    assert cfg.scan.concurrency == 10
    assert cfg.risk.stop_method == "resistance_below"


def test_unknown_key_rejected(tmp_path):
    with pytest.raises(ConfigError, match="risk_reward_ratio"):
        load_config(_write(tmp_path, "risk:\n  risk_reward_ratio: 2\n"))


def test_invalid_yaml_rejected(tmp_path):
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, "risk: [unclosed\n"))


@pytest.mark.parametrize(
    "section,changes,needle",
    [
        ("risk", {"risk_reward": 0.0}, "risk_reward"),
        ("risk", {"risk_reward": -1.0}, "risk_reward"),
        ("risk", {"below_pct": 1.5}, "below_pct"),
        ("risk", {"stop_method": "chandelier"}, "stop_method"),
        ("strategy", {"variant": "momentum"}, "variant"),
        ("strategy", {"compression_bars": 1}, "compression_bars"),
        ("strategy", {"volume_ma_period": 80}, "volume_ma_period"),
        ("strategy", {"slow_limit": 10}, "slow_limit"),
    ],
)
def test_invariant_violations_are_fatal(section, changes, needle):
    cfg = default_config()
    setattr(cfg, section, dataclasses.replace(getattr(cfg, section), **changes))
    with pytest.raises(ConfigError, match=needle):
        validate_config(cfg)


def test_zero_concurrency_rejected():
    cfg = default_config()
    cfg.scan.concurrency = 0
    with pytest.raises(ConfigError, match="concurrency"):
        validate_config(cfg)


def test_default_config_is_valid():
    validate_config(default_config())


def test_cli_exits_1_on_missing_config(tmp_path):
    from breakout_scanner.main import main

    assert main(["--config", str(tmp_path / "missing.yaml")]) == 1


def test_cli_exits_1_on_bad_override(tmp_path):
    from breakout_scanner.main import main

    assert main(["--config", _write(tmp_path, ""), "--concurrency", "0"]) == 1


def test_buffer_wide_enough_to_cross_zero_rejected():
    cfg = default_config()
    cfg.risk = dataclasses.replace(cfg.risk, below_pct=0.8, thin_margin_buffer_multiplier=1.5)
    with pytest.raises(ConfigError, match="buffer multiplier"):
        validate_config(cfg)


def test_volume_ma_longer_than_trap_window_rejected():
    cfg = default_config()
    cfg.strategy = dataclasses.replace(cfg.strategy, trap_lookback=10, volume_ma_period=10)
    validate_config(cfg)
    cfg.strategy = dataclasses.replace(cfg.strategy, volume_ma_period=20)
    with pytest.raises(ConfigError, match="trap_lookback"):
        validate_config(cfg)


@pytest.mark.parametrize(
    "text,needle",
    [
        ("strategy:\n  compression_bars: forty\n", "strategy.compression_bars"),
        ("risk:\n  risk_reward: true\n", "risk.risk_reward"),
        ("provider:\n  symbols: BTCUSDT\n", "provider.symbols"),
        ("risk: 2.5\n", "'risk' must be a mapping"),
    ],
)
def test_wrong_value_types_are_config_errors(tmp_path, monkeypatch, text, needle):
    monkeypatch.delenv("SCAN_CONCURRENCY", raising=False)
    with pytest.raises(ConfigError, match=needle):
        load_config(_write(tmp_path, text))


def test_cli_exits_1_on_non_numeric_field(tmp_path, caplog):
    from breakout_scanner.main import main

    path = _write(tmp_path, "strategy:\n  compression_bars: forty\n")
    with caplog.at_level("ERROR", logger="main"):
        assert main(["--config", path]) == 1
    assert "config_invalid" in caplog.text

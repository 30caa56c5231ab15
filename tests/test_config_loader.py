import sys

sys.path.insert(0, '.')

import pytest

from config import Config, SectionProxy


def test_default_config_has_simulator_sections():
    cfg = Config()
    assert cfg.exchange.symbol == 'BTCUSDT'
    assert cfg.simulator['initial_cash'] == 10000
    assert list(cfg.simulator.allowed_timeframes) == [1, 5]
    assert isinstance(cfg.get('history').get('intervals'), SectionProxy)


def test_env_placeholders_resolve(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text("exchange:\n  symbol: ${SIM_TEST_SYMBOL}\n  ws_url: ${SIM_TEST_UNSET}\n")
    monkeypatch.setenv('SIM_TEST_SYMBOL', 'ETHUSDT')
    monkeypatch.delenv('SIM_TEST_UNSET', raising=False)

    cfg = Config(str(path))
    assert cfg.exchange.symbol == 'ETHUSDT'
    assert cfg.exchange.ws_url == '${SIM_TEST_UNSET}'


def test_missing_file_raises(tmp_path):
    with pytest.raises(RuntimeError):
        Config(str(tmp_path / 'nope.yaml'))


def test_missing_key_is_attribute_error():
    proxy = SectionProxy({'a': 1})
    assert proxy.a == 1
    with pytest.raises(AttributeError):
        proxy.b

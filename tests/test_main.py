import pytest

from trade_signal_bot.config import build_config
from trade_signal_bot.main import check_mode_backend, main


@pytest.mark.parametrize("mode", ["intrabar", "close", "confirm", "state"])
def test_one_shot_modes_need_shared_state(mode):
    with pytest.raises(ValueError):
        check_mode_backend(build_config({"state": {"backend": "memory"}}), mode)
    check_mode_backend(build_config({"state": {"backend": "redis"}}), mode)


def test_run_mode_allows_memory():
    check_mode_backend(build_config({}), "run")


def test_main_rejects_confirm_on_memory_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("WATCHLIST", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text("provider:\n  symbols: [BTCUSDT]\nstate:\n  backend: memory\n", encoding="utf-8")
    assert main(["--config", str(path), "--mode", "confirm", "--symbol", "BTCUSDT"]) == 1

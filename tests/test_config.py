from pathlib import Path

import pytest

from estclient.utils.config import ClientConfig, EngineConfig, load_client_config, save_config


def test_load_config_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "estclient.yaml"
    path.write_text(
        "estclient:\n"
        "  name: stream-a\n"
        "  engine:\n"
        "    lot_timeout_s: 2.5\n"
        "  predictor:\n"
        "    depth: 6\n"
        "    probabilistic: true\n",
        encoding="utf-8",
    )
    cfg = load_client_config(str(path))
    assert cfg.name == "stream-a"
    assert cfg.engine.lot_timeout_s == 2.5
    assert cfg.engine.strict_keys is False
    assert cfg.predictor.depth == 6
    assert cfg.predictor.probabilistic is True
    assert cfg.predictor.rid == 33


def test_missing_root_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("platform: {}\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_client_config(str(path))


def test_explicit_missing_path_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_client_config(str(tmp_path / "nope.yaml"))


def test_defaults_without_config_file(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("ESTCLIENT_CONFIG", raising=False)
    assert load_client_config() == ClientConfig()


def test_save_and_reload(tmp_path: Path) -> None:
    cfg = ClientConfig(engine=EngineConfig(strict_keys=True))
    path = tmp_path / "out" / "estclient.yaml"
    save_config(cfg, path)
    assert load_client_config(str(path)) == cfg

from pathlib import Path

import pytest
from pydantic import ValidationError

from drivemirror.core import config as config_module
from drivemirror.core.config import AppConfig, clamp_page_limit


def test_load_config_creates_from_template(monkeypatch, tmp_path: Path):
    template = tmp_path / "config.yaml.example"
    target = tmp_path / "config.yaml"
    runtime_dir = tmp_path / "runtime"
    template.write_text(
        "\n".join(
            [
                "auth:",
                "  token_file: /tmp/google_tokens.json",
                "  client_id: tpl_client_id",
                "sync:",
                "  page_limit: 3",
                "  poll_interval_sec: 120",
                "logging:",
                f"  file: {runtime_dir / 'service.log'}",
                "database:",
                f"  path: {runtime_dir / 'service.db'}",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", template)
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.auth.token_file == "/tmp/google_tokens.json"
    assert cfg.auth.client_id == "tpl_client_id"
    assert cfg.sync.page_limit == 3
    assert cfg.sync.poll_interval_sec == 120


def test_load_config_creates_defaults_when_template_missing(monkeypatch, tmp_path: Path):
    target = tmp_path / "config.yaml"
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", tmp_path / "missing-template.yaml")
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.sync.page_limit == 5
    assert cfg.sync.change_page_size == 1000
    assert cfg.sync.poll_interval_sec == 0


def test_load_config_falls_back_when_template_invalid(monkeypatch, tmp_path: Path):
    template = tmp_path / "config.yaml.example"
    target = tmp_path / "config.yaml"
    template.write_text("auth: [invalid\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", template)
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.sync.page_limit == 5


def test_save_then_load_keeps_auth(monkeypatch, tmp_path: Path):
    target = tmp_path / "config.yaml"
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)
    cfg = AppConfig()
    cfg.auth.access_token = "ya29.static"

    config_module.save_config(cfg, target)

    assert config_module.load_config(target).auth.access_token == "ya29.static"


def test_page_limit_outside_range_is_rejected():
    with pytest.raises(ValidationError):
        AppConfig.model_validate({"sync": {"page_limit": 11}})


@pytest.mark.parametrize(
    "raw,expected",
    [(None, 5), (0, 1), (-3, 1), (3, 3), (10, 10), (50, 10), ("7", 7), ("x", 5), (True, 5)],
)
def test_clamp_page_limit(raw, expected):
    assert clamp_page_limit(raw) == expected

from pathlib import Path

import pytest

from palpable_bootstrap import paths

LOCATIONS = [
    (paths.get_boot_dir, "PALPABLE_BOOT_DIR", Path("/boot"), ("var", "boot")),
    (
        paths.get_runtime_dir,
        "PALPABLE_RUNTIME_DIR",
        Path("/tmp/palpable"),
        ("var", "run", "palpable"),
    ),
    (paths.get_log_dir, "PALPABLE_LOG_DIR", Path("/var/log"), ("var", "log")),
    (paths.get_static_dir, "PALPABLE_STATIC_DIR", Path("/portal"), ("portal",)),
]


@pytest.fixture
def clean_env(monkeypatch):
    for _, variable, _, _ in LOCATIONS:
        monkeypatch.delenv(variable, raising=False)


@pytest.mark.parametrize("getter, variable, image, checkout", LOCATIONS)
def test_environment_override_wins(monkeypatch, tmp_path, getter, variable, image, checkout):
    monkeypatch.setenv(variable, str(tmp_path))
    assert getter() == tmp_path


@pytest.mark.parametrize("getter, variable, image, checkout", LOCATIONS)
def test_boot_image_locations(monkeypatch, clean_env, getter, variable, image, checkout):
    monkeypatch.setattr(paths, "_is_development", lambda: False)
    assert getter() == image


@pytest.mark.parametrize("getter, variable, image, checkout", LOCATIONS)
def test_source_checkout_locations(monkeypatch, clean_env, getter, variable, image, checkout):
    monkeypatch.setattr(paths, "_is_development", lambda: True)
    assert getter() == paths.get_project_root().joinpath(*checkout)

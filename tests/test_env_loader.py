import os

from scraper.utils.env_loader import load_environment


def test_load_environment_from_custom_file(monkeypatch, tmp_path):
    env_file = tmp_path / "custom.env"
    env_file.write_text("TEST_CUSTOM_URL=https://example.com\nTEST_WORKERS=4\n")

    monkeypatch.delenv("TEST_CUSTOM_URL", raising=False)
    monkeypatch.delenv("TEST_WORKERS", raising=False)

    loaded = load_environment(env_file, override=True)

    assert loaded is True
    assert os.getenv("TEST_CUSTOM_URL") == "https://example.com"
    assert os.getenv("TEST_WORKERS") == "4"


def test_load_environment_uses_env_file_variable(monkeypatch, tmp_path):
    env_file = tmp_path / "pointed.env"
    env_file.write_text("TEST_POINTED=yes\n")
    monkeypatch.setenv("SCRAPER_ENV_FILE", str(env_file))
    monkeypatch.delenv("TEST_POINTED", raising=False)

    assert load_environment() is True
    assert os.getenv("TEST_POINTED") == "yes"


def test_load_environment_missing_file(tmp_path):
    missing_file = tmp_path / "missing.env"

    loaded = load_environment(missing_file)

    assert loaded is False

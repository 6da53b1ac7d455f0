import logging

import pytest

from settings import DEFAULTS, env_overrides


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for key in list(env_overrides) + ["STREAMING_SETUP_CONFIG"]:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def settings(tmp_path):
    config = dict(DEFAULTS)
    web_root = tmp_path / "www"
    config.update(
        {
            "nginx_conf": str(tmp_path / "nginx.conf"),
            "sites_available": str(tmp_path / "sites-available"),
            "sites_enabled": str(tmp_path / "sites-enabled"),
            "web_root": str(web_root),
            "hls_dir": str(web_root / "hls"),
            "dash_dir": str(web_root / "dash"),
            "index_file": str(web_root / "index.html"),
            "letsencrypt_live": str(tmp_path / "letsencrypt" / "live"),
            "renewal_job": str(tmp_path / "cron.weekly" / "certbot-renew"),
            "log_file": str(tmp_path / "streaming_setup.log"),
            "lock_timeout": 1,
        }
    )
    return config


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    log = logging.getLogger("streaming_setup")
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()

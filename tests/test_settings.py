"""Tests for the YAML settings loader."""
import textwrap

import pytest

from config.settings import Settings, get_settings, load_settings, reset_settings


@pytest.fixture(autouse=True)
def clean_cache():
    reset_settings()
    yield
    reset_settings()


def write_config(tmp_path, body: str):
    path = tmp_path / "settings.yaml"
    path.write_text(textwrap.dedent(body))
    return str(path)


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings == Settings()
        assert settings.dispatch.max_attempts == 3
        assert settings.dispatch.inter_message_delay == 0.2
        assert settings.queues.inbound == "inbound_events"

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WA_TOKEN", "secret-token")
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/2")
        path = write_config(tmp_path, """
            redis:
              backend: redis
              url: ${REDIS_URL}
            meta:
              access_token: ${WA_TOKEN}
              phone_number_id: "PNID-9"
        """)

        settings = load_settings(path)

        assert settings.redis.backend == "redis"
        assert settings.redis.url == "redis://cache:6379/2"
        assert settings.meta.access_token == "secret-token"
        assert settings.meta.phone_number_id == "PNID-9"
        assert settings.meta.api_version == "v18.0"

    def test_unresolved_placeholder_keeps_default(self, tmp_path, monkeypatch):
        monkeypatch.delenv("UNSET_DB_URL", raising=False)
        path = write_config(tmp_path, """
            database:
              url: ${UNSET_DB_URL}
              echo: true
        """)

        settings = load_settings(path)

        assert settings.database.url == "sqlite:///./message_hub.db"
        assert settings.database.echo is True

    def test_unknown_keys_are_ignored(self, tmp_path):
        path = write_config(tmp_path, """
            dispatch:
              max_attempts: 5
              jitter: 0.3
            voice:
              enabled: true
        """)

        settings = load_settings(path)

        assert settings.dispatch.max_attempts == 5
        assert not hasattr(settings.dispatch, "jitter")

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, """
            app_name: HubTest
            tenant:
              default_tenant_id: tenant-acme
        """)
        monkeypatch.setenv("HUB_WORKER_CONFIG", path)

        settings = get_settings()

        assert settings.app_name == "HubTest"
        assert settings.tenant.default_tenant_id == "tenant-acme"
        assert get_settings() is settings

    def test_bundled_config_loads(self, monkeypatch):
        monkeypatch.delenv("HUB_WORKER_CONFIG", raising=False)
        settings = load_settings()
        assert settings.queues.marketing == "marketing_queue"
        assert settings.dispatch.backoff_base == 2.0

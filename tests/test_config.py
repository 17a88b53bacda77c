import pytest
from pydantic import ValidationError

from fhir_offline.config import ClientConfig


def test_defaults_and_trailing_slash():
    config = ClientConfig(base_url="http://localhost:3001/fhir/R4/")
    assert config.base_url == "http://localhost:3001/fhir/R4"
    assert config.organization_id is None
    assert config.headers == {}
    assert config.timeout_ms == 30000
    assert config.timeout_seconds == 30.0
    assert config.retry_count == 3
    assert config.retry_delay_ms == 1000


def test_config_is_frozen():
    config = ClientConfig(base_url="http://localhost")
    with pytest.raises(ValidationError):
        config.timeout_ms = 5


def test_timeout_must_be_positive():
    with pytest.raises(ValidationError):
        ClientConfig(base_url="http://localhost", timeout_ms=0)


def test_updated_returns_new_snapshot_and_merges_headers():
    original = ClientConfig(base_url="http://a", headers={"Authorization": "Bearer old", "X-Trace": "1"})
    updated = original.updated(organization_id="org-9", headers={"Authorization": "Bearer new"})

    assert updated is not original
    assert updated.organization_id == "org-9"
    assert updated.headers == {"Authorization": "Bearer new", "X-Trace": "1"}
    assert original.organization_id is None
    assert original.headers == {"Authorization": "Bearer old", "X-Trace": "1"}


def test_updated_revalidates():
    config = ClientConfig(base_url="http://a")
    assert config.updated(base_url="http://b/").base_url == "http://b"
    with pytest.raises(ValidationError):
        config.updated(timeout_ms=-1)


def test_updated_rejects_unknown_fields():
    with pytest.raises(TypeError, match="base_uri"):
        ClientConfig(base_url="http://a").updated(base_uri="http://b")


def test_from_env(monkeypatch):
    monkeypatch.setattr("fhir_offline.config.load_dotenv", lambda: None)
    monkeypatch.setenv("FHIR_SERVER_URL", "http://env.test/fhir/R4/")
    monkeypatch.setenv("FHIR_ORGANIZATION_ID", "org-env")
    monkeypatch.setenv("FHIR_TIMEOUT_MS", "1500")
    monkeypatch.setenv("FHIR_RETRY_COUNT", "5")
    monkeypatch.delenv("FHIR_RETRY_DELAY_MS", raising=False)

    config = ClientConfig.from_env(headers={"Authorization": "Bearer x"})

    assert config.base_url == "http://env.test/fhir/R4"
    assert config.organization_id == "org-env"
    assert config.timeout_ms == 1500
    assert config.retry_count == 5
    assert config.retry_delay_ms == 1000
    assert config.headers == {"Authorization": "Bearer x"}


def test_from_env_requires_server_url(monkeypatch):
    monkeypatch.setattr("fhir_offline.config.load_dotenv", lambda: None)
    monkeypatch.delenv("FHIR_SERVER_URL", raising=False)
    with pytest.raises(ValueError, match="FHIR_SERVER_URL"):
        ClientConfig.from_env()
    assert ClientConfig.from_env(base_url="http://override").base_url == "http://override"

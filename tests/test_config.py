import json

import pydantic
import pytest

from webtools.config import ProxyConfig, Settings, load_settings, load_yaml_config
from webtools.envelope import error_payload, failure_envelope, image_content, is_error_envelope, success_envelope, text_content
from webtools.errors import ErrorKind
from webtools.fetch import Failure


@pytest.fixture
def settings_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "request_timeout_ms: 5000\n"
        "max_retries: 2\n"
        "proxy:\n"
        "  enabled: false\n"
        "  url: http://yaml-proxy:3128\n"
    )
    return str(path)


def test_load_settings_from_yaml(settings_file):
    settings = load_settings(settings_file, environ={})
    assert settings.request_timeout_ms == 5000
    assert settings.max_retries == 2
    assert settings.proxy == ProxyConfig(enabled=False, url="http://yaml-proxy:3128")
    assert settings.probe_timeout_ms == Settings().probe_timeout_ms


def test_environment_overrides(settings_file):
    environ = {"USE_PROXY": "true", "PROXY_URL": "http://env-proxy:8080", "PROXY_TIMEOUT": "9000", "IGNORE_SSL_ERRORS": "1"}
    settings = load_settings(settings_file, environ=environ)
    assert settings.proxy.enabled is True
    assert settings.proxy.url == "http://env-proxy:8080"
    assert settings.proxy.timeout_ms == 9000
    assert settings.ignore_ssl_errors is True


def test_non_integer_proxy_timeout_is_ignored(settings_file):
    settings = load_settings(settings_file, environ={"PROXY_TIMEOUT": "soon"})
    assert settings.proxy.timeout_ms == ProxyConfig().timeout_ms


def test_missing_file_uses_defaults(tmp_path):
    settings = load_settings(str(tmp_path / "absent.yaml"), environ={})
    assert settings == Settings()


def test_settings_path_from_environment(settings_file):
    settings = load_settings(environ={"WEBTOOLS_SETTINGS": settings_file})
    assert settings.max_retries == 2


def test_invalid_values_raise(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("max_retries: 0\n")
    with pytest.raises(pydantic.ValidationError):
        load_settings(str(path), environ={})


def test_broken_yaml_falls_back(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("proxy: [unclosed\n")
    assert load_yaml_config(str(path), {"x": 1}) == {"x": 1}


def test_settings_are_frozen():
    with pytest.raises(pydantic.ValidationError):
        Settings().max_retries = 9


# --- Envelope ---
def test_success_envelope_shapes():
    envelope = success_envelope(text_content("hello"), image_content(b"\x00\x01"))
    assert envelope == {
        "content": [
            {"type": "text", "text": "hello"},
            {"type": "image", "data": "AAE=", "mimeType": "image/png"},
        ]
    }
    assert is_error_envelope(envelope) is False
    assert is_error_envelope(success_envelope(text_content('{"not": "an error"}'))) is False


def test_failure_envelope():
    failure = Failure(
        type="failure",
        kind=ErrorKind.RATE_LIMITED,
        message="Access blocked (429)",
        retryable=True,
        recommendation="slow down",
        suggested_parameter_changes={"useProxy": True},
        status=429,
    )
    envelope = failure_envelope(failure, "https://a.test")
    assert is_error_envelope(envelope)
    payload = json.loads(envelope["content"][0]["text"])
    assert payload == {
        "error": "Rate limited",
        "details": "Access blocked (429)",
        "recommendation": "slow down",
        "retryable": True,
        "url": "https://a.test",
        "kind": "rate_limited",
        "status": 429,
        "suggestedSettings": {"useProxy": True},
    }


def test_error_payload_omits_empty_optionals():
    failure = Failure(type="failure", kind=ErrorKind.INTERNAL, message="m", retryable=False, recommendation="r")
    payload = error_payload(failure, None)
    assert "status" not in payload
    assert "suggestedSettings" not in payload

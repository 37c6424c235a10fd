import pytest

from posrd.app.storage import s3

_ENV = {
    "S3_ENDPOINT_URL": "http://minio:9000",
    "S3_ACCESS_KEY_ID": "key",
    "S3_SECRET_ACCESS_KEY": "secret",
    "S3_BUCKET": "posrd",
}


def _set_env(monkeypatch, **extra):
    for k, v in {**_ENV, **extra}.items():
        monkeypatch.setenv(k, v)


def test_storage_disabled_without_bucket(monkeypatch):
    _set_env(monkeypatch)
    monkeypatch.delenv("S3_BUCKET")
    assert s3.s3_enabled() is False
    with pytest.raises(RuntimeError):
        s3.object_key("logos/a.png")


def test_object_key_uses_prefix(monkeypatch):
    _set_env(monkeypatch, S3_PREFIX="/tienda-1/")
    assert s3.object_key("logos/a.png") == "tienda-1/logos/a.png"


def test_default_prefix_and_ssl(monkeypatch):
    _set_env(monkeypatch, S3_USE_SSL="false")
    monkeypatch.delenv("S3_PREFIX", raising=False)
    cfg = s3.get_s3_config()
    assert cfg.prefix == "posrd"
    assert cfg.use_ssl is False
    assert cfg.region == "us-east-1"

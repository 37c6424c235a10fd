import os
from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass(frozen=True)
class S3Config:
    endpoint_url: str
    access_key_id: str
    secret_access_key: str
    bucket: str
    region: str
    use_ssl: bool
    prefix: str


def get_s3_config() -> Optional[S3Config]:
    endpoint = (os.environ.get("S3_ENDPOINT_URL") or "").strip()
    access = (os.environ.get("S3_ACCESS_KEY_ID") or "").strip()
    secret = (os.environ.get("S3_SECRET_ACCESS_KEY") or "").strip()
    bucket = (os.environ.get("S3_BUCKET") or "").strip()
    region = (os.environ.get("S3_REGION") or "us-east-1").strip() or "us-east-1"
    use_ssl = (os.environ.get("S3_USE_SSL") or "").strip().lower() not in {"0", "false", "no"}
    prefix = (os.environ.get("S3_PREFIX") or "posrd").strip().strip("/")

    if not endpoint or not access or not secret or not bucket:
        return None
    return S3Config(
        endpoint_url=endpoint,
        access_key_id=access,
        secret_access_key=secret,
        bucket=bucket,
        region=region,
        use_ssl=use_ssl,
        prefix=prefix,
    )


def s3_enabled() -> bool:
    return get_s3_config() is not None


def _client(cfg: S3Config):
    # Lazy import: boto3 is only loaded when object storage is configured.
    import boto3
    from botocore.config import Config

    # Force v4 signatures so MinIO works consistently.
    bc = Config(signature_version="s3v4", s3={"addressing_style": "path"})
    return boto3.client(
        "s3",
        endpoint_url=cfg.endpoint_url,
        aws_access_key_id=cfg.access_key_id,
        aws_secret_access_key=cfg.secret_access_key,
        region_name=cfg.region,
        use_ssl=cfg.use_ssl,
        config=bc,
    )


def _require() -> S3Config:
    cfg = get_s3_config()
    if not cfg:
        raise RuntimeError("S3 not configured")
    return cfg


def object_key(name: str) -> str:
    cfg = _require()
    return f"{cfg.prefix}/{name}" if cfg.prefix else name


def put_bytes(*, key: str, data: bytes, content_type: str) -> str:
    cfg = _require()
    res = _client(cfg).put_object(
        Bucket=cfg.bucket,
        Key=key,
        Body=data or b"",
        ContentType=content_type or "application/octet-stream",
    )
    return (res.get("ETag") or "").strip('"')


def get_bytes(*, key: str) -> Tuple[bytes, str]:
    cfg = _require()
    res = _client(cfg).get_object(Bucket=cfg.bucket, Key=key)
    return res["Body"].read(), res.get("ContentType") or "application/octet-stream"


def delete_object(*, key: str) -> None:
    cfg = _require()
    _client(cfg).delete_object(Bucket=cfg.bucket, Key=key)

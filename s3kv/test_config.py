import pytest

from s3kv.config import S3StoreConfig, format_duration, parse_duration
from s3kv.retry import RetryPolicy


@pytest.mark.parametrize(
    "value,expected",
    [
        ("1ms", 0.001),
        ("2.5s", 2.5),
        ("10us", 1e-5),
        ("3m", 180.0),
        ("1h", 3600.0),
        (7, 7.0),
        (0.25, 0.25),
    ],
)
def test_parse_duration(value: object, expected: float) -> None:
    assert parse_duration(value) == pytest.approx(expected)  # type: ignore[arg-type]


@pytest.mark.parametrize("value", ["", "1", "ms", "1 day", "-1s", True, None])
def test_parse_duration_rejects(value: object) -> None:
    with pytest.raises(ValueError):
        parse_duration(value)  # type: ignore[arg-type]


def test_format_duration() -> None:
    assert format_duration(0.001) == "1ms"
    assert format_duration(32.0) == "32s"
    assert format_duration(120.0) == "2m"
    assert format_duration(1.5) == "1500ms"


def test_urls() -> None:
    aws = S3StoreConfig(bucket="my-bucket", aws_region="eu-west-1")
    assert not aws.uses_path_style
    assert aws.base_url == "https://my-bucket.s3.eu-west-1.amazonaws.com"
    local = S3StoreConfig(bucket="my-bucket", aws_region="us-east-1", endpoint="http://localhost:9000/")
    assert local.uses_path_style
    assert local.base_url == "http://localhost:9000/my-bucket"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"bucket": "Bad_Bucket"},
        {"bucket": "ab"},
        {"aws_region": ""},
        {"endpoint": "ftp://example.com"},
        {"endpoint": "http://example.com/?x=1"},
        {"path": "/leading"},
        {"access_key_id": "AK"},
        {"read_timeout": 0},
    ],
)
def test_validation(kwargs: dict) -> None:
    args = {"bucket": "my-bucket", "aws_region": "us-east-1", **kwargs}
    with pytest.raises(ValueError):
        S3StoreConfig(**args)


def test_secrets_are_not_in_repr() -> None:
    config = S3StoreConfig(
        bucket="my-bucket", aws_region="us-east-1", access_key_id="AK", secret_access_key="SECRET"
    )
    assert "SECRET" not in repr(config)


def test_json_round_trip() -> None:
    data = {
        "driver": "s3",
        "bucket": "my-bucket",
        "aws_region": "us-west-2",
        "endpoint": "http://localhost:9000",
        "path": "prefix/",
        "read_timeout": "30s",
        "retries": {"max_retries": 3, "initial_delay": "1ms", "max_delay": "10ms"},
    }
    config = S3StoreConfig.from_json(data)
    assert config.read_timeout == 30.0
    assert config.retries == RetryPolicy(
        max_retries=3, initial_delay=parse_duration("1ms"), max_delay=parse_duration("10ms")
    )
    assert config.to_json(include_defaults=False) == data
    assert S3StoreConfig.from_json(config.to_json()) == config


def test_json_omits_secrets() -> None:
    config = S3StoreConfig(
        bucket="my-bucket",
        aws_region="us-east-1",
        access_key_id="AK",
        secret_access_key="SECRET",
        session_token="TOKEN",
    )
    out = config.to_json()
    assert out["access_key_id"] == "AK"
    assert "secret_access_key" not in out
    assert "session_token" not in out


def test_json_rejects_unknown() -> None:
    with pytest.raises(ValueError):
        S3StoreConfig.from_json({"driver": "gcs", "bucket": "my-bucket", "aws_region": "x"})
    with pytest.raises(ValueError):
        S3StoreConfig.from_json({"bucket": "my-bucket", "aws_region": "x", "colour": "red"})
    with pytest.raises(ValueError):
        S3StoreConfig.from_json(
            {"bucket": "my-bucket", "aws_region": "x", "retries": {"attempts": 3}}
        )

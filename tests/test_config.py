import pytest

import paths
from config import load_settings
from errors import ConfigurationError
from uploader import get_transcoded_url

BASE_ENV = {
    "KAFKA_BOOTSTRAP_SERVERS": "broker:9092",
    "OUTPUT_BUCKET": "media",
    "AWS_ACCESS_KEY": "key",
    "AWS_SECRET_ACCESS_KEY": "secret",
}


def env(**overrides):
    values = dict(BASE_ENV)
    for key, value in overrides.items():
        if value is None:
            values.pop(key, None)
        else:
            values[key] = value
    return values


def test_defaults(load_env):
    settings = load_env(env())
    assert settings.queue_backend == "kafka"
    assert settings.inbound_queue == "transcodings_queue"
    assert settings.outbound_queue == "transcoded_queue"
    assert settings.dead_letter_queue is None
    assert settings.max_workers == 2
    assert settings.db_backend == "none"


def test_values_are_parsed(load_env):
    settings = load_env(env(MAX_WORKERS="4", PREVIEW_SECONDS="5", INBOUND_QUEUE="uploads"))
    assert (settings.max_workers, settings.preview_seconds, settings.inbound_queue) == (4, 5, "uploads")


@pytest.mark.parametrize("missing", ["OUTPUT_BUCKET", "AWS_ACCESS_KEY", "AWS_SECRET_ACCESS_KEY"])
def test_required_values(load_env, missing):
    with pytest.raises(ConfigurationError, match=missing):
        load_env(env(**{missing: None}))


@pytest.mark.parametrize("blank", ["", "  "])
def test_blank_value_counts_as_missing(load_env, blank):
    with pytest.raises(ConfigurationError, match="OUTPUT_BUCKET"):
        load_env(env(OUTPUT_BUCKET=blank))


def test_kafka_needs_bootstrap_servers(load_env):
    with pytest.raises(ConfigurationError, match="KAFKA_BOOTSTRAP_SERVERS"):
        load_env(env(KAFKA_BOOTSTRAP_SERVERS=None))


def test_sqs_needs_queue_urls(load_env):
    with pytest.raises(ConfigurationError, match="INBOUND_QUEUE"):
        load_env(env(QUEUE_BACKEND="sqs"))

    settings = load_env(env(
        QUEUE_BACKEND="sqs",
        KAFKA_BOOTSTRAP_SERVERS=None,
        INBOUND_QUEUE="https://sqs.ap-south-2.amazonaws.com/1/in",
        OUTBOUND_QUEUE="https://sqs.ap-south-2.amazonaws.com/1/out",
    ))
    assert settings.queue_backend == "sqs"


def test_unknown_backends(load_env):
    with pytest.raises(ConfigurationError, match="QUEUE_BACKEND"):
        load_env(env(QUEUE_BACKEND="rabbit"))
    with pytest.raises(ConfigurationError, match="DB_BACKEND"):
        load_env(env(DB_BACKEND="postgres"))


def test_store_needs_db_name(load_env):
    with pytest.raises(ConfigurationError, match="DB_NAME"):
        load_env(env(DB_BACKEND="mongodb"))


def test_invalid_number(load_env):
    with pytest.raises(ConfigurationError, match="MAX_WORKERS"):
        load_env(env(MAX_WORKERS="many"))
    with pytest.raises(ConfigurationError, match="MAX_WORKERS"):
        load_env(env(MAX_WORKERS="0"))


def test_reads_env_file(load_env, tmp_path, monkeypatch):
    (tmp_path / ".env").write_text("OUTPUT_BUCKET=from-file\nMAX_WORKERS=3\n")
    load_env(env())
    monkeypatch.delenv("OUTPUT_BUCKET")
    monkeypatch.chdir(tmp_path)

    settings = load_settings()

    assert (settings.output_bucket, settings.max_workers) == ("from-file", 3)


def test_kafka_credentials(load_env):
    assert load_env(env()).kafka_config() == {"security_protocol": "PLAINTEXT"}

    config = load_env(env(
        KAFKA_SECURITY_PROTOCOL="SASL_SSL", KAFKA_USERNAME="svc", KAFKA_PASSWORD="pw",
    )).kafka_config()
    assert config == {
        "security_protocol": "SASL_SSL",
        "sasl_mechanism": "PLAIN",
        "sasl_plain_username": "svc",
        "sasl_plain_password": "pw",
    }


def test_public_base_url(load_env):
    assert load_env(env()).public_base_url == "s3://media/videos"
    assert load_env(env(MEDIA_BASE_URL="https://cdn.example.com/")).public_base_url == \
        "https://cdn.example.com"


@pytest.mark.parametrize("raw, prefix", [
    ("videos", "videos/"),
    ("videos/", "videos/"),
    ("/media/videos/", "media/videos/"),
    ("/", ""),
])
def test_output_prefix_is_normalised(load_env, raw, prefix):
    settings = load_env(env(OUTPUT_PREFIX=raw))
    assert settings.output_prefix == prefix


@pytest.mark.parametrize("raw", ["videos", "videos/", "/"])
def test_published_urls_match_uploaded_keys(load_env, raw):
    settings = load_env(env(OUTPUT_PREFIX=raw))

    key = paths.storage_prefix(settings.output_prefix, "u1", "clip42") + paths.canonical_file("clip42")
    url = get_transcoded_url(settings.public_base_url, "u1", "clip42")

    assert url == f"s3://media/{key}"

import os
import tempfile
from typing import Optional

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from errors import ConfigurationError


class Settings(BaseSettings):
    """
    Deployment settings for the worker and the API.

    Each field is read from the environment variable of the same name,
    upper-cased (OUTPUT_BUCKET, MAX_WORKERS, ...), or from a .env file.
    """

    # -------------------- Queues --------------------
    queue_backend: str = "kafka"
    kafka_bootstrap_servers: Optional[str] = None
    kafka_consumer_group: str = "transcode-workers"
    kafka_security_protocol: str = "PLAINTEXT"
    kafka_sasl_mechanism: str = "PLAIN"
    kafka_username: Optional[str] = None
    kafka_password: Optional[str] = None
    inbound_queue: str = "transcodings_queue"
    outbound_queue: str = "transcoded_queue"
    dead_letter_queue: Optional[str] = None
    poll_timeout_ms: int = 1000

    # -------------------- Storage --------------------
    aws_region: str = "ap-south-2"
    aws_access_key: str = Field(min_length=1)
    aws_secret_access_key: str = Field(min_length=1)
    aws_session_token: Optional[str] = None
    output_bucket: str = Field(min_length=1)
    output_prefix: str = "videos/"
    media_base_url: Optional[str] = None

    # -------------------- Transcoding --------------------
    work_dir: str = os.path.join(tempfile.gettempdir(), "transcode-work")
    max_workers: int = Field(default=2, ge=1)
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    preview_seconds: int = 10

    # -------------------- Job store --------------------
    db_backend: str = "none"
    db_name: Optional[str] = None
    mongo_url: Optional[str] = None
    mongo_jobs_collection: str = "jobs"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        env_ignore_empty=True,
        str_strip_whitespace=True,
    )

    @field_validator("output_prefix")
    @classmethod
    def key_prefix(cls, value: str) -> str:
        # "" or "<segments>/" so that keys and public URLs line up
        value = value.strip("/")
        return f"{value}/" if value else ""

    @model_validator(mode="after")
    def check_backends(self) -> "Settings":
        backend = self.queue_backend.lower()
        if backend == "kafka":
            if not self.kafka_bootstrap_servers:
                raise ValueError("KAFKA_BOOTSTRAP_SERVERS is required when QUEUE_BACKEND=kafka")
        elif backend == "sqs":
            for field in ("inbound_queue", "outbound_queue"):
                if not getattr(self, field).startswith("https://"):
                    raise ValueError(
                        f"{field.upper()} must be an SQS queue URL when QUEUE_BACKEND=sqs"
                    )
        else:
            raise ValueError(f"Unknown QUEUE_BACKEND: {self.queue_backend}")

        db_backend = self.db_backend.lower()
        if db_backend not in ("none", "mongodb", "dynamodb"):
            raise ValueError(f"Unknown DB_BACKEND: {self.db_backend}")
        if db_backend != "none" and not self.db_name:
            raise ValueError(f"DB_NAME is required when DB_BACKEND={db_backend}")
        return self

    def kafka_config(self) -> dict:
        """Extra client arguments shared by every Kafka producer and consumer."""
        config = {"security_protocol": self.kafka_security_protocol}
        if self.kafka_username and self.kafka_password:
            config.update(
                sasl_mechanism=self.kafka_sasl_mechanism,
                sasl_plain_username=self.kafka_username,
                sasl_plain_password=self.kafka_password,
            )
        return config

    @property
    def public_base_url(self) -> str:
        if self.media_base_url:
            return self.media_base_url.rstrip("/")
        return f"s3://{self.output_bucket}/{self.output_prefix}".rstrip("/")


def load_settings(env_file: Optional[str] = ".env") -> Settings:
    """
    Build Settings from the environment (and env_file, when it exists).

    Raises ConfigurationError naming the offending variables when a required
    value is absent or a value does not parse.
    """
    try:
        return Settings(_env_file=env_file)
    except ValidationError as e:
        problems = ", ".join(
            f"{str(err['loc'][0]).upper()} ({err['msg']})" if err["loc"] else err["msg"]
            for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from e

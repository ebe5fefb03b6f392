import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from kafka import KafkaConsumer, KafkaProducer
from kafka.errors import KafkaError
from kafka.structs import OffsetAndMetadata, TopicPartition
from pydantic import ValidationError

from errors import ConfigurationError, DecodeError, PublishError
from schema import JobRequest, TranscodeResult

logger = logging.getLogger(__name__)


def _encode(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value).encode("utf-8")


class QueueService(ABC):
    @abstractmethod
    def send(self, message: Any, **kwargs) -> Dict[str, Any]:
        pass

    @abstractmethod
    def receive(self, max_messages: int = 10, timeout_ms: int = 1000) -> List[Dict[str, Any]]:
        """Raw messages: {'body': str, 'receipt_handle': str, ...}."""

    @abstractmethod
    def delete(self, receipt_handle: str) -> bool:
        pass

    def ping(self) -> None:
        """Raise if the broker cannot be reached."""

    def close(self) -> None:
        pass


class KafkaQueue(QueueService):
    def __init__(self, bootstrap_servers: str, topic: str,
                 group_id: Optional[str] = None, **config):
        self.topic = topic
        servers = bootstrap_servers.split(",")
        client_config = config.get("client_config", {})
        self.producer = KafkaProducer(
            bootstrap_servers=servers,
            value_serializer=_encode,
            **client_config,
        )
        self.consumer = None
        # per partition: offsets handed out but not settled, next offset past
        # the newest settled record, and the last committed position
        self._pending: Dict[TopicPartition, set] = {}
        self._settled: Dict[TopicPartition, int] = {}
        self._committed: Dict[TopicPartition, int] = {}
        if group_id:
            # bodies are decoded by decode_job so a bad message cannot break poll()
            self.consumer = KafkaConsumer(
                topic,
                bootstrap_servers=servers,
                group_id=group_id,
                value_deserializer=lambda m: m.decode("utf-8", errors="replace"),
                auto_offset_reset="earliest",
                enable_auto_commit=False,
                **client_config,
            )

    def send(self, message: Any, **kwargs) -> Dict[str, Any]:
        topic = kwargs.get("topic", self.topic)
        future = self.producer.send(topic, message)
        metadata = future.get(timeout=10)
        return {
            "topic": metadata.topic,
            "partition": metadata.partition,
            "offset": metadata.offset,
        }

    def receive(self, max_messages=10, timeout_ms=1000):
        if self.consumer is None:
            raise RuntimeError(f"KafkaQueue for {self.topic} was opened without a consumer group")

        records = self.consumer.poll(timeout_ms=timeout_ms, max_records=max_messages)
        messages = []
        for _, records_list in records.items():
            for record in records_list:
                tp = TopicPartition(record.topic, record.partition)
                self._pending.setdefault(tp, set()).add(record.offset)
                self._committed.setdefault(tp, record.offset)
                messages.append({
                    "body": record.value,
                    "receipt_handle": f"{record.topic}:{record.partition}:{record.offset}",
                    "topic": record.topic,
                    "partition": record.partition,
                    "offset": record.offset,
                })
        return messages

    def delete(self, receipt_handle: str) -> bool:
        """
        Settle one record and commit what that allows.

        A partition's offset only moves up to its oldest record that is still
        unsettled, so a record left unacknowledged is redelivered after a
        restart or rebalance even when later records were acknowledged.
        """
        if self.consumer is None:
            return False
        topic, partition, offset = receipt_handle.rsplit(":", 2)
        tp = TopicPartition(topic, int(partition))
        self._pending.get(tp, set()).discard(int(offset))
        self._settled[tp] = max(self._settled.get(tp, 0), int(offset) + 1)
        self._commit()
        return True

    def _commit(self) -> None:
        assigned = self.consumer.assignment()
        for tp in set(self._pending) | set(self._settled):
            if tp not in assigned:
                # revoked in a rebalance; the new owner starts from the last commit
                self._pending.pop(tp, None)
                self._settled.pop(tp, None)
                self._committed.pop(tp, None)

        offsets = {}
        for tp, position in self._settled.items():
            if self._pending.get(tp):
                position = min(position, min(self._pending[tp]))
            if position > self._committed.get(tp, -1):
                offsets[tp] = OffsetAndMetadata(position, "", -1)
        if offsets:
            self.consumer.commit(offsets)
            for tp, meta in offsets.items():
                self._committed[tp] = meta.offset

    def ping(self) -> None:
        # blocks until topic metadata arrives; KafkaTimeoutError if the topic is unavailable
        self.producer.partitions_for(self.topic)

    def close(self) -> None:
        self.producer.close()
        if self.consumer:
            self.consumer.close()


class SQSQueue(QueueService):
    # SQS hard limit per ReceiveMessage call
    MAX_BATCH = 10

    def __init__(self, queue_url: str, region_name: str = "ap-south-2", **config):
        self.queue_url = queue_url
        self.client = boto3.client("sqs", region_name=region_name, **config)

    def send(self, message: Any, **kwargs) -> Dict[str, Any]:
        message_body = message if isinstance(message, str) else json.dumps(message)
        try:
            response = self.client.send_message(
                QueueUrl=self.queue_url,
                MessageBody=message_body,
                **kwargs,
            )
            return {
                "message_id": response["MessageId"],
                "md5": response["MD5OfMessageBody"],
            }
        except ClientError as e:
            raise RuntimeError(f"SQS send failed: {e}") from e

    def receive(self, max_messages=10, timeout_ms=1000):
        try:
            response = self.client.receive_message(
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=max(1, min(max_messages, self.MAX_BATCH)),
                WaitTimeSeconds=min(timeout_ms // 1000, 20),
            )
        except ClientError as e:
            raise RuntimeError(f"SQS receive failed: {e}") from e

        return [
            {
                "body": msg["Body"],
                "receipt_handle": msg["ReceiptHandle"],
                "message_id": msg["MessageId"],
            }
            for msg in response.get("Messages", [])
        ]

    def delete(self, receipt_handle: str) -> bool:
        try:
            self.client.delete_message(
                QueueUrl=self.queue_url,
                ReceiptHandle=receipt_handle,
            )
            return True
        except (ClientError, BotoCoreError) as e:
            logger.warning("SQS delete failed: %s", e)
            return False

    def ping(self) -> None:
        self.client.get_queue_attributes(QueueUrl=self.queue_url, AttributeNames=["QueueArn"])


class QueueWrapper:
    def __init__(self, service_type: str, **config):
        if service_type.lower() == "kafka":
            self.queue = KafkaQueue(**config)
        elif service_type.lower() == "sqs":
            self.queue = SQSQueue(**config)
        else:
            raise ValueError(f"Unknown service type: {service_type}")

    def send(self, message: Any, **kwargs) -> Dict[str, Any]:
        return self.queue.send(message, **kwargs)

    def receive(self, **kwargs) -> List[Dict[str, Any]]:
        return self.queue.receive(**kwargs)

    def delete(self, receipt_handle: str) -> bool:
        return self.queue.delete(receipt_handle)

    def ping(self) -> None:
        self.queue.ping()

    def close(self):
        self.queue.close()


def build_queue(settings, name: str, consume: bool = False) -> QueueWrapper:
    """Open the queue or topic called name; ConfigurationError if the broker is unreachable."""
    backend = settings.queue_backend.lower()
    try:
        if backend == "kafka":
            queue = QueueWrapper(
                "kafka",
                bootstrap_servers=settings.kafka_bootstrap_servers,
                topic=name,
                group_id=settings.kafka_consumer_group if consume else None,
                client_config=settings.kafka_config(),
            )
        else:
            queue = QueueWrapper(
                "sqs",
                queue_url=name,
                region_name=settings.aws_region,
                aws_access_key_id=settings.aws_access_key,
                aws_secret_access_key=settings.aws_secret_access_key,
            )
        queue.ping()
    except (KafkaError, ClientError, BotoCoreError, ValueError) as e:
        raise ConfigurationError(f"Cannot open {backend} queue {name}: {e}") from e
    return queue


# -------------------- Job ingestion / result publication --------------------

def decode_job(body: Union[str, bytes, dict]) -> JobRequest:
    try:
        if isinstance(body, (str, bytes)):
            return JobRequest.model_validate_json(body)
        return JobRequest.model_validate(body)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
            for err in e.errors()
        )
        raise DecodeError(f"Invalid job message: {problems}") from e


def encode_result(result: TranscodeResult) -> Dict[str, str]:
    return result.model_dump(mode="json")


class JobSource:
    """Inbound side: fetches raw job messages and settles them after processing."""

    def __init__(self, queue, dead_letter_queue=None, timeout_ms: int = 1000):
        self.queue = queue
        self.dead_letter_queue = dead_letter_queue
        self.timeout_ms = timeout_ms

    def fetch(self, max_messages: int) -> List[Dict[str, Any]]:
        return self.queue.receive(max_messages=max_messages, timeout_ms=self.timeout_ms)

    def ack(self, message: Dict[str, Any]) -> bool:
        """False when the broker refused; the message is then redelivered later."""
        try:
            return self.queue.delete(message["receipt_handle"])
        except (KafkaError, RuntimeError, ClientError, BotoCoreError) as e:
            logger.warning("Could not acknowledge %s: %s", message["receipt_handle"], e)
            return False

    def dead_letter(self, message: Dict[str, Any], reason: str) -> bool:
        """
        Forward a rejected message and acknowledge it.

        The message stays unacknowledged (and will be redelivered) when the
        dead-letter queue cannot take it.
        """
        if self.dead_letter_queue is not None:
            envelope = {
                "body": message["body"],
                "reason": reason,
                "failed_at": datetime.now(timezone.utc).isoformat(),
            }
            try:
                self.dead_letter_queue.send(envelope)
            except (KafkaError, RuntimeError, ClientError, BotoCoreError) as e:
                logger.error("Could not dead-letter %s: %s", message["receipt_handle"], e)
                return False
        else:
            logger.warning("Dropping rejected message %s: %s", message["receipt_handle"], reason)
        return self.ack(message)

    def close(self) -> None:
        self.queue.close()
        if self.dead_letter_queue is not None:
            self.dead_letter_queue.close()


class ResultSink:
    """Outbound side: one completion record per successful job."""

    def __init__(self, queue):
        self.queue = queue

    def publish(self, result: TranscodeResult) -> Dict[str, Any]:
        try:
            return self.queue.send(encode_result(result))
        except (KafkaError, RuntimeError, ClientError, BotoCoreError, TypeError, ValueError) as e:
            raise PublishError(
                f"Could not publish result for upload {result.video_upload_id}: {e}"
            ) from e

    def close(self) -> None:
        self.queue.close()

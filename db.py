import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pymongo import MongoClient
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStoreError(RuntimeError):
    pass


class JobStore(ABC):
    """Job lifecycle records keyed by upload id."""

    @abstractmethod
    def record(self, upload_id: str, fields: Dict[str, Any]) -> None:
        """Create or update the record for upload_id with fields."""

    @abstractmethod
    def get(self, upload_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_jobs(self, limit: int = 10, skip: int = 0) -> List[Dict[str, Any]]:
        """Most recently created first."""

    def close(self) -> None:
        pass


class DynamoJobStore(JobStore):
    """
    DynamoDB table with a string partition key 'upload_id'.

    list_jobs scans the whole table and sorts in Python, which is fine for
    the few thousand records a worker fleet keeps around.
    """

    def __init__(self, table_name: str, region_name: str = "ap-south-2", **config):
        self.table_name = table_name
        self.client = boto3.client("dynamodb", region_name=region_name, **config)
        self.resource = boto3.resource("dynamodb", region_name=region_name, **config)
        self.table = self.resource.Table(table_name)
        self._ensure_table_exists()

    def _ensure_table_exists(self) -> None:
        try:
            self.client.describe_table(TableName=self.table_name)
            return
        except self.client.exceptions.ResourceNotFoundException:
            logger.info("Creating DynamoDB table '%s' for jobs", self.table_name)
        try:
            self.client.create_table(
                TableName=self.table_name,
                KeySchema=[{"AttributeName": "upload_id", "KeyType": "HASH"}],
                AttributeDefinitions=[{"AttributeName": "upload_id", "AttributeType": "S"}],
                BillingMode="PAY_PER_REQUEST",
            )
            self.client.get_waiter("table_exists").wait(TableName=self.table_name)
        except ClientError as e:
            raise JobStoreError(f"Failed to create DynamoDB table '{self.table_name}': {e}") from e

    def record(self, upload_id, fields):
        fields = {k: v for k, v in fields.items() if k != "upload_id"}
        if not fields:
            return
        try:
            self.table.update_item(
                Key={"upload_id": upload_id},
                UpdateExpression="SET " + ", ".join(f"#{k} = :{k}" for k in fields),
                ExpressionAttributeNames={f"#{k}": k for k in fields},
                ExpressionAttributeValues={f":{k}": v for k, v in fields.items()},
            )
        except (ClientError, BotoCoreError) as e:
            raise JobStoreError(f"DynamoDB update failed: {e}") from e

    def get(self, upload_id):
        try:
            response = self.table.get_item(Key={"upload_id": upload_id})
        except (ClientError, BotoCoreError) as e:
            raise JobStoreError(f"DynamoDB get failed: {e}") from e
        return response.get("Item")

    def list_jobs(self, limit=10, skip=0):
        try:
            response = self.table.scan()
            items = response.get("Items", [])
            while "LastEvaluatedKey" in response:
                response = self.table.scan(ExclusiveStartKey=response["LastEvaluatedKey"])
                items.extend(response.get("Items", []))
        except (ClientError, BotoCoreError) as e:
            raise JobStoreError(f"DynamoDB scan failed: {e}") from e

        items.sort(key=lambda d: d.get("created_at") or "", reverse=True)
        return items[skip:skip + limit]


class MongoJobStore(JobStore):
    def __init__(self, database: str, collection: str, connection_string: Optional[str] = None,
                 **config):
        if connection_string:
            self.client = MongoClient(connection_string, **config)
        else:
            self.client = MongoClient(**config)
        self.collection = self.client[database][collection]

    def record(self, upload_id, fields):
        try:
            self.collection.update_one(
                {"upload_id": upload_id},
                {"$set": dict(fields, upload_id=upload_id)},
                upsert=True,
            )
        except PyMongoError as e:
            raise JobStoreError(f"MongoDB update failed: {e}") from e

    def get(self, upload_id):
        try:
            return self.collection.find_one({"upload_id": upload_id}, {"_id": 0})
        except PyMongoError as e:
            raise JobStoreError(f"MongoDB find failed: {e}") from e

    def list_jobs(self, limit=10, skip=0):
        try:
            cursor = self.collection.find({}, {"_id": 0}).sort("created_at", -1)
            return list(cursor.skip(skip).limit(limit))
        except PyMongoError as e:
            raise JobStoreError(f"MongoDB find failed: {e}") from e

    def close(self):
        self.client.close()


def get_job_store(settings) -> Optional[JobStore]:
    backend = settings.db_backend.lower()
    if backend == "none":
        return None

    logger.info("Job store: %s/%s", backend, settings.db_name)
    if backend == "mongodb":
        return MongoJobStore(
            database=settings.db_name,
            collection=settings.mongo_jobs_collection,
            connection_string=settings.mongo_url or "mongodb://localhost:27017",
        )
    if backend == "dynamodb":
        return DynamoJobStore(
            table_name=settings.db_name,
            region_name=settings.aws_region,
            aws_access_key_id=settings.aws_access_key,
            aws_secret_access_key=settings.aws_secret_access_key,
        )
    raise ValueError(f"Unknown DB_BACKEND: {settings.db_backend}")

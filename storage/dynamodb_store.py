"""DynamoDB-backed persistence for sync session state."""
import json
import logging
import time
from typing import Any, Optional

import boto3
from botocore.exceptions import ClientError

from sync_engine.errors import PersistenceFailure

logger = logging.getLogger(__name__)


class DynamoDBSessionStore:
    """Key/value store for sync state on a DynamoDB table."""

    KEY_ATTRIBUTE = 'session_key'

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        """
        Initialize DynamoDB client and table reference.

        Args:
            table_name: Name of the DynamoDB table (hash key: session_key)
            region_name: AWS region, defaults to the environment's region
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBSessionStore for table: {table_name}")

    def load(self, key: str, default: Any = None) -> Any:
        """
        Read the value stored under a key.

        Args:
            key: Record key
            default: Value returned when the record does not exist

        Returns:
            The decoded JSON value, or default

        Raises:
            PersistenceFailure: If the read fails or the payload is corrupt
        """
        try:
            response = self.table.get_item(Key={self.KEY_ATTRIBUTE: key})
        except ClientError as e:
            logger.error(f"Error reading '{key}' from DynamoDB: {e}")
            raise PersistenceFailure(f"Failed to load '{key}': {e}") from e

        item = response.get('Item')
        if not item:
            return default

        try:
            return json.loads(item['payload'])
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Corrupt payload stored under '{key}': {e}")
            raise PersistenceFailure(f"Corrupt payload for '{key}': {e}") from e

    def save(self, key: str, value: Any) -> None:
        """
        Write a JSON-compatible value under a key, replacing any previous one.

        Raises:
            PersistenceFailure: If the write fails
        """
        item = {
            self.KEY_ATTRIBUTE: key,
            # Stored as a JSON string so floats and nested nulls survive
            'payload': json.dumps(value),
            'updated_at': int(time.time())
        }
        try:
            self.table.put_item(Item=item)
        except ClientError as e:
            logger.error(f"Error writing '{key}' to DynamoDB: {e}")
            raise PersistenceFailure(f"Failed to save '{key}': {e}") from e
        logger.debug(f"Saved '{key}' to DynamoDB")


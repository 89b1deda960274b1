"""
DynamoDB cache store with retry logic.

Items live in the weather cache table keyed by ``PK`` (prefixed cache key)
and ``SK`` (always ``DATA``). Values are stored as JSON together with the
write timestamp, and ``expires_at`` carries the table's TTL. boto3 is
blocking, so every table call runs in a worker thread via
``asyncio.to_thread``.
"""

import asyncio
import json
import logging
import math
import time
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from weather_aggregator.config import CacheConfig, RetryConfig
from weather_aggregator.retry_service import (
    RetryConfig as RetryConfigClass,
    RetryError,
    dynamodb_retry,
)

logger = logging.getLogger(__name__)

SORT_KEY = "DATA"

_DYNAMODB_ERRORS = (ClientError, BotoCoreError, RetryError)


class CacheError(Exception):
    """Base exception for cache-related errors."""


class DynamoDBCacheService:
    """
    DynamoDB-backed cache with the same contract as the memory cache.

    Reads on a disconnected store return empty values (None, False, 0);
    writes raise CacheError. Only items under the configured key prefix are
    visible to clear(), size() and get_stats().
    """

    def __init__(
        self,
        table_name: Optional[str] = None,
        region: str = CacheConfig.DYNAMODB_REGION,
        key_prefix: str = CacheConfig.KEY_PREFIX,
    ):
        """
        Initialize DynamoDB cache service.

        Args:
            table_name: DynamoDB table name (defaults to config value)
            region: AWS region
            key_prefix: Namespace prepended to every cache key
        """
        self.table_name = table_name or CacheConfig.DYNAMODB_TABLE_NAME
        self.region = region
        self.key_prefix = key_prefix
        self.dynamodb = None
        self.table = None
        self.is_connected = False

        self.retry_config = RetryConfigClass(
            max_attempts=RetryConfig.DYNAMODB_MAX_ATTEMPTS,
            base_delay=RetryConfig.DYNAMODB_BASE_DELAY,
            backoff_multiplier=RetryConfig.DYNAMODB_BACKOFF_MULTIPLIER,
            max_delay=RetryConfig.DYNAMODB_MAX_DELAY,
            jitter=RetryConfig.DYNAMODB_JITTER,
            jitter_range=RetryConfig.DYNAMODB_JITTER_RANGE,
        )

    async def connect(self) -> "DynamoDBCacheService":
        """
        Open the table and check that it is reachable.

        Raises:
            CacheError: If the table name is missing or the table is unreachable
        """
        if not self.table_name:
            raise CacheError("DynamoDB table name not provided")

        @dynamodb_retry(self.retry_config)
        def _describe_table_with_retry():
            self.table.meta.client.describe_table(TableName=self.table_name)

        try:
            self.dynamodb = boto3.resource("dynamodb", region_name=self.region)
            self.table = self.dynamodb.Table(self.table_name)
            await asyncio.to_thread(_describe_table_with_retry)
        except _DYNAMODB_ERRORS as e:
            self.is_connected = False
            logger.error("Failed to connect to DynamoDB: %s", e)
            raise CacheError(f"DynamoDB initialization failed: {e}") from e

        self.is_connected = True
        logger.info(
            "Connected DynamoDB cache to table %s in %s", self.table_name, self.region
        )
        return self

    async def disconnect(self):
        self.is_connected = False
        self.table = None
        self.dynamodb = None

    def _full_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _strip_prefix(self, full_key: str) -> str:
        return full_key[len(self.key_prefix) :]

    @staticmethod
    def _is_live(item: Dict[str, Any]) -> bool:
        return int(item.get("expires_at", 0)) > int(time.time())

    @staticmethod
    def _decode(item: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            return json.loads(item["payload"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Skipping malformed cache item %s", item.get("PK"))
            return None

    def _get_item(self, key: str) -> Optional[Dict[str, Any]]:
        @dynamodb_retry(self.retry_config)
        def _get_item_with_retry() -> Optional[Dict[str, Any]]:
            response = self.table.get_item(
                Key={"PK": self._full_key(key), "SK": SORT_KEY}
            )
            return response.get("Item")

        item = _get_item_with_retry()
        if item and self._is_live(item):
            return item
        return None

    def _scan_items(self) -> List[Dict[str, Any]]:
        @dynamodb_retry(self.retry_config)
        def _scan_page(start_key: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            kwargs = {
                "FilterExpression": Attr("PK").begins_with(self.key_prefix)
                & Attr("SK").eq(SORT_KEY)
            }
            if start_key:
                kwargs["ExclusiveStartKey"] = start_key
            return self.table.scan(**kwargs)

        items = []
        start_key = None
        while True:
            page = _scan_page(start_key)
            items.extend(item for item in page.get("Items", []) if self._is_live(item))
            start_key = page.get("LastEvaluatedKey")
            if not start_key:
                return items

    def _delete_items(self, items: List[Dict[str, Any]]):
        with self.table.batch_writer() as batch:
            for item in items:
                batch.delete_item(Key={"PK": item["PK"], "SK": item["SK"]})

    async def set(
        self, key: str, value: Any, ttl_ms: int = CacheConfig.DEFAULT_TTL_MS
    ):
        """
        Store a value with a TTL rounded up to whole seconds.

        Raises:
            CacheError: If the store is not connected or the write failed
        """
        if not self.is_connected:
            raise CacheError("DynamoDB cache not connected")

        @dynamodb_retry(self.retry_config)
        def _set_with_retry():
            ttl_seconds = math.ceil(ttl_ms / 1000)
            self.table.put_item(
                Item={
                    "PK": self._full_key(key),
                    "SK": SORT_KEY,
                    "payload": json.dumps(
                        {"value": value, "timestamp": int(time.time() * 1000)}
                    ),
                    "expires_at": int(time.time()) + ttl_seconds,
                }
            )

        try:
            await asyncio.to_thread(_set_with_retry)
        except _DYNAMODB_ERRORS as e:
            logger.error("DynamoDB error caching %s: %s", key, e)
            raise CacheError(f"DynamoDB set failed for {key}: {e}") from e
        logger.debug("Cached %s", key)

    async def get(self, key: str) -> Optional[Any]:
        if not self.is_connected:
            return None
        try:
            item = await asyncio.to_thread(self._get_item, key)
        except _DYNAMODB_ERRORS as e:
            logger.error("DynamoDB error getting cache for %s: %s", key, e)
            return None

        if item is None:
            logger.debug("Cache miss for %s", key)
            return None
        decoded = self._decode(item)
        return decoded.get("value") if decoded else None

    async def has(self, key: str) -> bool:
        if not self.is_connected:
            return False
        try:
            return await asyncio.to_thread(self._get_item, key) is not None
        except _DYNAMODB_ERRORS as e:
            logger.error("DynamoDB error checking cache for %s: %s", key, e)
            return False

    async def delete(self, key: str) -> bool:
        if not self.is_connected:
            return False

        @dynamodb_retry(self.retry_config)
        def _delete_with_retry() -> bool:
            response = self.table.delete_item(
                Key={"PK": self._full_key(key), "SK": SORT_KEY},
                ReturnValues="ALL_OLD",
            )
            return "Attributes" in response

        try:
            return await asyncio.to_thread(_delete_with_retry)
        except _DYNAMODB_ERRORS as e:
            logger.error("DynamoDB error deleting %s: %s", key, e)
            return False

    async def clear(self):
        """
        Delete every item under the key prefix.

        Raises:
            CacheError: If the store is not connected or the delete failed
        """
        if not self.is_connected:
            raise CacheError("DynamoDB cache not connected")

        try:
            items = await asyncio.to_thread(self._scan_items)
            await asyncio.to_thread(self._delete_items, items)
        except _DYNAMODB_ERRORS as e:
            logger.error("DynamoDB clear error: %s", e)
            raise CacheError(f"DynamoDB clear failed: {e}") from e
        logger.info("Cleared %d cache entries", len(items))

    async def size(self) -> int:
        if not self.is_connected:
            return 0
        try:
            return len(await asyncio.to_thread(self._scan_items))
        except _DYNAMODB_ERRORS as e:
            logger.error("DynamoDB size error: %s", e)
            return 0

    async def get_stats(self) -> Dict[str, Any]:
        """
        Cache statistics; keys and timestamps are limited to the first entries.
        """
        empty = {"size": 0, "keys": [], "timestamps": [], "connected": False}
        if not self.is_connected:
            return empty

        try:
            items = await asyncio.to_thread(self._scan_items)
        except _DYNAMODB_ERRORS as e:
            logger.error("DynamoDB getStats error: %s", e)
            return empty

        listed = items[: CacheConfig.STATS_KEY_LIMIT]
        now = int(time.time() * 1000)
        timestamps = []
        for item in listed:
            decoded = self._decode(item)
            if decoded and "timestamp" in decoded:
                timestamps.append(
                    {"timestamp": decoded["timestamp"], "age": now - decoded["timestamp"]}
                )

        return {
            "size": len(items),
            "keys": [self._strip_prefix(item["PK"]) for item in listed],
            "timestamps": timestamps,
            "connected": self.is_connected,
        }

"""Queue payload model and publishing of import jobs."""

from __future__ import annotations

import base64
import binascii
import logging

from kombu import Producer
from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.ingestion.importers import EntityType
from app.workers.broker import RECOVERABLE_ERRORS, BrokerConnection

logger = logging.getLogger(__name__)

RETRY_HEADER = "x-retry-count"
CONTENT_TYPE = "application/json"
PERSISTENT_DELIVERY = 2


class JobMessage(BaseModel):
    """Body of an import message. Field names are camelCase on the wire."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    job_id: str = Field(alias="jobId", min_length=1)
    entity_type: str = Field(alias="entityType", min_length=1)
    total_rows: int = Field(alias="totalRows", ge=0)
    csv_payload: str = Field(alias="csvPayload")

    @field_validator("csv_payload")
    @classmethod
    def must_be_base64(cls, v: str) -> str:
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"csvPayload is not valid base64: {e}") from e
        return v

    @classmethod
    def for_upload(
        cls, job_id: str, entity_type: EntityType, total_rows: int, raw: bytes
    ) -> JobMessage:
        return cls(
            job_id=job_id,
            entity_type=entity_type.value,
            total_rows=total_rows,
            csv_payload=base64.b64encode(raw).decode("ascii"),
        )

    @classmethod
    def from_body(cls, body: bytes | str) -> JobMessage:
        """Parse a raw message body; raises ``pydantic.ValidationError``."""
        return cls.model_validate_json(body)

    def to_body(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    def decode_payload(self) -> bytes:
        return base64.b64decode(self.csv_payload)


def retry_count_from(headers: dict | None) -> int:
    try:
        return max(0, int((headers or {}).get(RETRY_HEADER, 0)))
    except (TypeError, ValueError):
        return 0


def queue_for(entity_type: str | EntityType) -> str:
    try:
        return EntityType(entity_type).queue_name
    except ValueError:
        raise ValueError(f"No queue mapping for entity type: {entity_type}") from None


class JobPublisher:
    """Send import messages to their entity queue via the default exchange."""

    def __init__(self, broker: BrokerConnection):
        self.broker = broker

    def publish(self, message: JobMessage, retry_count: int = 0) -> None:
        self.republish(message.to_body(), message.entity_type, retry_count)
        logger.info(
            f"Published job {message.job_id} ({message.entity_type}, "
            f"{message.total_rows} rows)"
        )

    def republish(self, body: bytes, entity_type: str, retry_count: int) -> None:
        """Send ``body`` unchanged with the given retry count header."""
        queue_name = queue_for(entity_type)
        try:
            self._send(body, queue_name, retry_count)
        except RECOVERABLE_ERRORS as e:
            # Stale shared connection: retry once on a fresh one.
            logger.warning(f"Publish to '{queue_name}' failed ({e}), reconnecting once")
            self.broker.invalidate()
            self._send(body, queue_name, retry_count)

    def _send(self, body: bytes, queue_name: str, retry_count: int) -> None:
        with self.broker.lock:
            producer = Producer(self.broker.acquire_channel())
            producer.publish(
                body,
                exchange="",
                routing_key=queue_name,
                headers={RETRY_HEADER: retry_count},
                content_type=CONTENT_TYPE,
                content_encoding="utf-8",
                delivery_mode=PERSISTENT_DELIVERY,
            )

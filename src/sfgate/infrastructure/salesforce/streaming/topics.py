"""TopicProvisioner - create or update PushTopic records before subscribing"""

import io
from typing import TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from sfgate.core.cancellation import CancelToken
from sfgate.shared.exceptions import (
    ConfigurationError,
    RemoteApiError,
    TransportError,
)

from ..models import CreateSObjectResult, PushTopic, QueryRecordsPushTopic
from ..requests import RestClient

PUSH_TOPIC_OBJECT_NAME = "PushTopic"
TOPIC_DESCRIPTION = "Topic created by sfgate"
LOOKUP_QUERY = (
    "SELECT Id, Name, Query, ApiVersion, IsActive, "
    "NotifyForFields, NotifyForOperations, Description "
    "FROM PushTopic WHERE Name = '{name}'"
)


def _soql_literal(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


ModelT = TypeVar("ModelT", bound=BaseModel)


def _parse(
    model: type[ModelT], stream: io.BytesIO | None, what: str
) -> ModelT:
    if stream is None:
        raise TransportError(f"Empty response {what}")
    try:
        return model.model_validate_json(stream.getvalue())
    except ValidationError as e:
        msg = f"Un-marshaling error {what}: {e}"
        logger.error(msg)
        raise TransportError(msg) from e


class TopicProvisioner:
    """Ensures a named PushTopic exists with the desired query

    The lookup-then-create sequence is not atomic. Two callers provisioning
    the same new topic at once may both try to create it; the server rejects
    the duplicate, so callers that care must serialize externally.
    """

    def __init__(self, rest_client: RestClient) -> None:
        """Initialize provisioner

        Args:
            rest_client: JSON-format REST client
        """
        if rest_client.payload_format != "json":
            raise ValueError("TopicProvisioner requires a json RestClient")
        self._rest_client = rest_client

    def ensure_topic(
        self,
        name: str,
        query: str,
        notify_for_fields: str | None = None,
        notify_for_operations: str | None = None,
        allow_update: bool = False,
        cancel: CancelToken | None = None,
    ) -> None:
        """Create the topic, or update it when its definition differs

        Args:
            name: PushTopic name
            query: Desired SOQL filter query
            notify_for_fields: Desired NotifyForFields (None keeps existing)
            notify_for_operations: Desired NotifyForOperations (None keeps existing)
            allow_update: Update an existing topic whose definition differs
            cancel: Optional cancellation token

        Raises:
            ConfigurationError: If the topic differs and allow_update is False
            RemoteApiError: If lookup, create or update is rejected
            TransportError: On network or decoding failure
        """
        topic = self.find_topic(name, cancel=cancel)
        if topic is None:
            self._create_topic(
                name, query, notify_for_fields, notify_for_operations, cancel
            )
            return

        logger.info(f"Found existing topic {name}: {topic.id}")
        if not self._differs(topic, query, notify_for_fields, notify_for_operations):
            return

        if not allow_update:
            msg = (
                f"Query doesn't match existing Topic {name} "
                "and topic updates are disabled"
            )
            logger.error(msg)
            raise ConfigurationError(msg)

        self._update_topic(
            topic, query, notify_for_fields, notify_for_operations, cancel
        )

    def find_topic(
        self, name: str, cancel: CancelToken | None = None
    ) -> PushTopic | None:
        """Look up a PushTopic by exact name

        Name is not an external ID, so a SOQL query is used.
        """
        soql = LOOKUP_QUERY.format(name=_soql_literal(name))
        stream = self._rest_client.query(soql, cancel=cancel)
        records = _parse(
            QueryRecordsPushTopic, stream, f"retrieving Topic {name}"
        )
        if records.total_size == 0 or not records.records:
            return None
        if records.total_size > 1:
            logger.warning(
                f"Found {records.total_size} topics named {name}, using the first"
            )
        return records.records[0]

    @staticmethod
    def _differs(
        topic: PushTopic,
        query: str,
        notify_for_fields: str | None,
        notify_for_operations: str | None,
    ) -> bool:
        if query != topic.query:
            return True
        if (
            notify_for_fields is not None
            and notify_for_fields != topic.notify_for_fields
        ):
            return True
        return (
            notify_for_operations is not None
            and notify_for_operations != topic.notify_for_operations
        )

    def _create_topic(
        self,
        name: str,
        query: str,
        notify_for_fields: str | None,
        notify_for_operations: str | None,
        cancel: CancelToken | None,
    ) -> None:
        topic = PushTopic(
            name=name,
            query=query,
            api_version=float(self._rest_client.api_version),
            description=TOPIC_DESCRIPTION,
            notify_for_fields=notify_for_fields,
            notify_for_operations=notify_for_operations,
        )
        logger.info(f"Creating Topic {name} with Query [{query}]")

        stream = self._rest_client.create_sobject(
            PUSH_TOPIC_OBJECT_NAME,
            topic.model_dump_json(by_alias=True, exclude_none=True),
            cancel=cancel,
        )
        result = _parse(CreateSObjectResult, stream, f"creating Topic {name}")
        if not result.success:
            error = RemoteApiError.from_errors(result.errors, 400)
            logger.error(f"Error creating Topic {name}: {error}")
            raise error
        logger.info(f"Created Topic {name}: {result.id}")

    def _update_topic(
        self,
        topic: PushTopic,
        query: str,
        notify_for_fields: str | None,
        notify_for_operations: str | None,
        cancel: CancelToken | None,
    ) -> None:
        logger.info(f"Updating Topic {topic.name} with Query [{query}]")

        # only mutable fields, Name is never resent
        update = PushTopic(
            query=query,
            notify_for_fields=notify_for_fields,
            notify_for_operations=notify_for_operations,
        )
        self._rest_client.update_sobject(
            PUSH_TOPIC_OBJECT_NAME,
            topic.id,
            update.model_dump_json(by_alias=True, exclude_none=True),
            cancel=cancel,
        )

"""Secondary-processing queue for derivative jobs.

Jobs are small JSON documents::

    {"file_id": "...", "derivative_kind": "image_derivatives", "params": {}}

``UPLOADS_QUEUE_BACKEND`` selects the backend:

- ``rabbitmq``: durable queue, persistent messages, consumed by
  ``manage.py run_derivative_worker`` (at-least-once delivery)
- ``inline``: runs the job immediately in the calling thread
"""

import abc
import dataclasses
import json
import logging
import threading
from typing import Any, ClassVar, final, override

import pika
from django.conf import settings

logger = logging.getLogger(__name__)


@final
@dataclasses.dataclass(frozen=True, slots=True)
class DerivativeJob:
    """Request to build derivatives for one file."""

    file_id: str
    derivative_kind: str
    params: dict[str, Any] = dataclasses.field(default_factory=dict)

    def to_json(self) -> bytes:
        """Serialize for the wire."""
        return json.dumps(dataclasses.asdict(self)).encode()

    @classmethod
    def from_json(cls, body: bytes) -> 'DerivativeJob':
        """Parse a message body.

        Args:
            body: JSON message body.

        Returns:
            Parsed job.

        Raises:
            ValueError: If the body is not a valid job document.
        """
        payload = json.loads(body)
        if not isinstance(payload, dict):
            raise ValueError('Job payload must be a JSON object')
        try:
            return cls(
                file_id=str(payload['file_id']),
                derivative_kind=str(payload['derivative_kind']),
                params=dict(payload.get('params') or {}),
            )
        except KeyError as error:
            raise ValueError(f'Job payload is missing {error}') from error


class DerivativeQueue(abc.ABC):
    """Fire-and-forget submission of derivative jobs."""

    @abc.abstractmethod
    def submit(self, job: DerivativeJob) -> None:
        """Hand a job to the backend."""


@final
class InlineDerivativeQueue(DerivativeQueue):
    """Runs jobs synchronously. For development and tests."""

    @override
    def submit(self, job: DerivativeJob) -> None:
        from server.apps.uploads.logic.derivative_operations import (  # noqa: WPS433
            run_derivative_job,
        )

        logger.debug('Running derivative job inline: %s', job)
        run_derivative_job(job)


@final
class RabbitMQDerivativeQueue(DerivativeQueue):
    """Publishes jobs to a durable RabbitMQ queue.

    Connections are kept per thread, channels are opened per publish.
    """

    _thread_local: ClassVar[threading.local] = threading.local()

    def __init__(self, url: str, queue_name: str) -> None:
        """Initialize publisher.

        Args:
            url: AMQP URL.
            queue_name: Durable queue the worker consumes.
        """
        self._url = url
        self._queue_name = queue_name

    @override
    def submit(self, job: DerivativeJob) -> None:
        try:
            connection = self._get_connection()
            with connection.channel() as channel:
                channel.queue_declare(queue=self._queue_name, durable=True)
                channel.basic_publish(
                    exchange='',
                    routing_key=self._queue_name,
                    body=job.to_json(),
                    properties=pika.BasicProperties(
                        content_type='application/json',
                        delivery_mode=pika.DeliveryMode.Persistent,
                    ),
                )
        except (pika.exceptions.AMQPError, OSError):
            logger.exception('Failed to publish derivative job: %s', job)
            connection = getattr(self._thread_local, 'connection', None)
            if connection is not None and connection.is_open:
                connection.close()
            raise
        logger.info(
            'Queued %s job for file %s',
            job.derivative_kind,
            job.file_id,
        )

    def _get_connection(self) -> pika.BlockingConnection:
        connection = getattr(self._thread_local, 'connection', None)
        if connection is None or connection.is_closed:
            logger.info(
                'Opening RabbitMQ connection for thread %d',
                threading.get_ident(),
            )
            connection = pika.BlockingConnection(pika.URLParameters(self._url))
            self._thread_local.connection = connection
        return connection


def get_queue_name() -> str:
    """Get name of the derivative jobs queue."""
    return getattr(settings, 'UPLOADS_DERIVATIVE_QUEUE', 'file_derivatives')


def get_derivative_queue() -> DerivativeQueue:
    """Get the queue selected by ``UPLOADS_QUEUE_BACKEND``.

    Returns:
        Configured queue.

    Raises:
        ValueError: If the setting names an unknown backend.
    """
    backend = getattr(settings, 'UPLOADS_QUEUE_BACKEND', 'inline')
    if backend == 'inline':
        return InlineDerivativeQueue()
    if backend == 'rabbitmq':
        return RabbitMQDerivativeQueue(settings.RABBITMQ_URL, get_queue_name())
    raise ValueError(f'Unknown derivative queue backend: {backend}')

"""Management command consuming derivative jobs from RabbitMQ."""

import logging
import time
from typing import Any, Final

import pika
from django.conf import settings
from django.core.management.base import BaseCommand
from django.db import close_old_connections

from server.apps.uploads.infrastructure.queue import DerivativeJob, get_queue_name
from server.apps.uploads.logic.derivative_operations import run_derivative_job

_DEFAULT_PREFETCH: Final = 1
_DEFAULT_RETRY_DELAY: Final = 5

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    """Run the derivative worker until interrupted.

    Messages are acknowledged only after the job ran, so a crashed worker
    leaves them for the next one. A message whose handling failed is
    requeued once, then dropped.
    """

    help = 'Consume derivative jobs (thumbnails, previews) from RabbitMQ'

    def add_arguments(self, parser: Any) -> None:
        """Add command line arguments.

        Args:
            parser: Argument parser.
        """
        parser.add_argument(
            '--prefetch',
            type=int,
            default=_DEFAULT_PREFETCH,
            help=f'Unacknowledged messages per worker (default: {_DEFAULT_PREFETCH})',
        )
        parser.add_argument(
            '--retry-delay',
            type=int,
            default=_DEFAULT_RETRY_DELAY,
            help=(
                'Seconds to wait before reconnecting '
                f'(default: {_DEFAULT_RETRY_DELAY})'
            ),
        )

    def handle(self, *args: Any, **options: Any) -> None:
        """Execute the worker loop.

        Args:
            args: Positional arguments (unused).
            options: Command options.
        """
        queue_name = get_queue_name()
        self.stdout.write(f'Consuming derivative jobs from queue {queue_name}')

        while True:
            try:
                self._consume(queue_name, options['prefetch'])
            except pika.exceptions.AMQPConnectionError as exc:
                self.stderr.write(
                    f'Connection to RabbitMQ failed: {exc}. '
                    f'Retrying in {options["retry_delay"]} seconds...',
                )
                logger.warning('RabbitMQ connection lost: %s', exc)
                time.sleep(options['retry_delay'])
            except KeyboardInterrupt:
                self.stdout.write(self.style.WARNING('Worker stopped'))
                break

    def handle_message(
        self,
        channel: Any,
        method: Any,
        properties: Any,
        body: bytes,
    ) -> None:
        """Run one job and settle its message.

        Args:
            channel: Channel the message arrived on.
            method: Delivery details.
            properties: Message properties (unused).
            body: JSON job document.
        """
        try:
            job = DerivativeJob.from_json(body)
        except ValueError:
            logger.exception('Discarding malformed derivative job: %r', body)
            channel.basic_reject(delivery_tag=method.delivery_tag, requeue=False)
            return

        close_old_connections()
        try:
            run_derivative_job(job)
        except Exception:
            logger.exception('Derivative job crashed: %s', job)
            channel.basic_nack(
                delivery_tag=method.delivery_tag,
                requeue=not method.redelivered,
            )
            return

        channel.basic_ack(delivery_tag=method.delivery_tag)

    def _consume(self, queue_name: str, prefetch: int) -> None:
        connection = pika.BlockingConnection(
            pika.URLParameters(settings.RABBITMQ_URL),
        )
        try:
            channel = connection.channel()
            channel.queue_declare(queue=queue_name, durable=True)
            channel.basic_qos(prefetch_count=prefetch)
            channel.basic_consume(
                queue=queue_name,
                on_message_callback=self.handle_message,
            )
            self.stdout.write(self.style.SUCCESS('Worker is waiting for jobs'))
            channel.start_consuming()
        finally:
            if connection.is_open:
                connection.close()

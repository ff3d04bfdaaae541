"""Overrides for local development and the test suite."""

from server.settings.components import config

DEBUG = True

ALLOWED_HOSTS = ['localhost', '127.0.0.1', '[::1]']

# Derivative jobs run in-process unless a broker is configured
UPLOADS_QUEUE_BACKEND = config('UPLOADS_QUEUE_BACKEND', default='inline')

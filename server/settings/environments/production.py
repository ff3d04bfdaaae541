"""Production settings."""

from server.settings.components import config

DEBUG = False

ALLOWED_HOSTS = config('DJANGO_ALLOWED_HOSTS', cast=lambda hosts: [
    host.strip() for host in hosts.split(',') if host.strip()
])

UPLOADS_QUEUE_BACKEND = config('UPLOADS_QUEUE_BACKEND', default='rabbitmq')

SECURE_CONTENT_TYPE_NOSNIFF = True
SESSION_COOKIE_SECURE = True
CSRF_COOKIE_SECURE = True

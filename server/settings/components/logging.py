"""Logging configuration.

Application modules log through ``logging.getLogger(__name__)``;
everything under ``server`` shares one console handler.
"""

from server.settings.components import config

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'console': {
            'format': '%(asctime)s %(levelname)s [%(name)s] %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'console',
        },
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': config('DJANGO_LOG_LEVEL', default='WARNING'),
            'propagate': False,
        },
        'server': {
            'handlers': ['console'],
            'level': config('UPLOADS_LOG_LEVEL', default='INFO'),
            'propagate': False,
        },
        'pika': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
    },
}

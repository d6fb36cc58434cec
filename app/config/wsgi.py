"""
WSGI entry point for the settlement web process.

Serves the admin and the payment webhook endpoint. Celery workers and
beat use config.celery instead.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_wsgi_application()

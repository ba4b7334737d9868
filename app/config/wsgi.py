"""
WSGI config for the billing service.

Used by gunicorn in deployment. Celery workers do not load this module; they
start from config.celery instead.

For more information on this file, see:
https://docs.djangoproject.com/en/5.2/howto/deployment/wsgi/
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_wsgi_application()

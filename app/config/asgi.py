"""
ASGI config for the escrow service.

Uvicorn uses this entry point to serve the Django application. The escrow
API is plain HTTP; there are no WebSocket routes.

For more information on this file, see:
https://docs.djangoproject.com/en/5.2/howto/deployment/asgi/
"""

import os

from django.core.asgi import get_asgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_asgi_application()

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "errandbit.settings.prod")

application = get_wsgi_application()

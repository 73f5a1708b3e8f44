import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "recruitment_backend.settings.base")

app = Celery("recruitment_backend")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()

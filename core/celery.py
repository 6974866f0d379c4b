# core/celery.py
from __future__ import annotations

import os

from celery import Celery

# Módulo de settings do Django
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "core.settings")

app = Celery("core")

# Configuração lida do settings.py com prefixo CELERY_
# (CELERY_BROKER_URL, CELERY_RESULT_BACKEND, CELERY_BEAT_SCHEDULE...)
app.config_from_object("django.conf:settings", namespace="CELERY")

# Descobre nfse/tasks.py
app.autodiscover_tasks()

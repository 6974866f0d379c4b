# core/__init__.py
from __future__ import annotations

# Garante que o app Celery é carregado junto com o Django (shared_task usa este app)
from core.celery import app as celery_app

__all__ = ("celery_app",)

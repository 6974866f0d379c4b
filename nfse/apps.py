# nfse/apps.py
from django.apps import AppConfig


class NfseConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "nfse"
    verbose_name = "NFS-e Nacional"

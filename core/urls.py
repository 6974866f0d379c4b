# core/urls.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from django.contrib import admin
from django.urls import path

# O emissor é uma biblioteca de serviços; só o admin é exposto por HTTP.
urlpatterns = [
    path("admin/", admin.site.urls),
]

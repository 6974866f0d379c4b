# nfse/admin.py
from __future__ import annotations

from django.contrib import admin

from nfse.models import Empresa, EventoNFSe, Transmissao


@admin.register(Empresa)
class EmpresaAdmin(admin.ModelAdmin):
    list_display = (
        "cnpj",
        "razao_social",
        "tipo_ambiente",
        "ultimo_numero_dps",
        "certificado_validade",
        "ativa",
        "created_at",
    )
    list_filter = ("tipo_ambiente", "ativa")
    search_fields = ("cnpj", "razao_social", "nome_fantasia")
    readonly_fields = (
        "certificado_titular",
        "certificado_emissor",
        "certificado_validade_inicio",
        "certificado_validade",
        "ultimo_numero_dps",
        "created_at",
        "updated_at",
    )
    fieldsets = (
        (
            "Dados do emissor",
            {
                "fields": (
                    "cnpj",
                    "razao_social",
                    "nome_fantasia",
                    "inscricao_municipal",
                    "codigo_municipio",
                    "ativa",
                )
            },
        ),
        (
            "Ambiente Sefin",
            {"fields": ("tipo_ambiente", "ultimo_numero_dps")},
        ),
        (
            "Certificado A1",
            {
                "fields": (
                    "certificado_titular",
                    "certificado_emissor",
                    "certificado_validade_inicio",
                    "certificado_validade",
                )
            },
        ),
        (
            "Auditoria",
            {"fields": ("created_at", "updated_at")},
        ),
    )


@admin.register(Transmissao)
class TransmissaoAdmin(admin.ModelAdmin):
    list_display = (
        "id_dps",
        "empresa",
        "numero_dps",
        "serie_dps",
        "status_envio",
        "estado_processamento",
        "situacao_nfse",
        "chave_acesso",
        "created_at",
    )
    list_filter = ("status_envio", "estado_processamento", "situacao_nfse", "empresa")
    search_fields = ("id_dps", "chave_acesso", "numero_nfse", "empresa__cnpj")
    date_hierarchy = "created_at"
    readonly_fields = [f.name for f in Transmissao._meta.fields]


@admin.register(EventoNFSe)
class EventoNFSeAdmin(admin.ModelAdmin):
    list_display = (
        "chave_acesso",
        "tipo_evento",
        "numero_sequencial",
        "status",
        "codigo_retorno",
        "empresa",
        "created_at",
    )
    list_filter = ("tipo_evento", "status", "empresa")
    search_fields = ("chave_acesso", "id_evento", "empresa__cnpj")
    readonly_fields = [f.name for f in EventoNFSe._meta.fields]

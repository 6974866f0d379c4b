# nfse/tasks.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from asgiref.sync import async_to_sync
from celery import shared_task

from django.conf import settings

from nfse.models import certificados_a_vencer
from nfse.services.sefin.persistence import transmissoes_ainda_pendentes
from nfse.services.sefin.workflow import reconsultar_transmissao

logger = logging.getLogger("nfse.sefin")


# =====================================================
# Tarefa: reconsulta das DPS que ficaram AINDA_PENDENTE
# =====================================================


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def reconsultar_pendentes_task(self, limite: int = 100) -> Dict[str, Any]:
    """
    Percorre as transmissões em AINDA_PENDENTE (mais antigas primeiro) e
    roda uma nova rodada de consultas do idDPS para cada uma.

    Uma falha numa DPS não impede as demais; só erros ao listar as
    pendências disparam retry com backoff exponencial.
    """
    try:
        pendentes = transmissoes_ainda_pendentes(limite=limite)
    except Exception as exc:  # noqa: BLE001
        logger.exception("reconsultar_pendentes_task: erro ao listar pendências: %s", exc)
        if self.request.retries < self.max_retries:
            countdown = 60 * (2**self.request.retries)
            raise self.retry(exc=exc, countdown=countdown)
        return {"ok": False, "error": str(exc)}

    logger.info("reconsultar_pendentes_task iniciado: %s DPS pendente(s).", len(pendentes))

    resumo: Dict[str, Any] = {"ok": True, "total": len(pendentes), "resultados": {}}
    for transmissao in pendentes:
        try:
            resultado = async_to_sync(reconsultar_transmissao)(transmissao.id_dps)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "reconsultar_pendentes_task: erro inesperado na DPS %s: %s",
                transmissao.id_dps,
                exc,
            )
            resumo["resultados"][transmissao.id_dps] = "ERRO"
            continue
        resumo["resultados"][transmissao.id_dps] = resultado.get("estado") or resultado.get("origem")

    logger.info("reconsultar_pendentes_task finalizado: %s", resumo["resultados"])
    return resumo


# =====================================================
# Tarefa: alerta de certificados A1 perto do vencimento
# =====================================================


@shared_task
def verificar_certificados_task(dias_alerta: Optional[int] = None) -> Dict[str, Any]:
    """
    Lista as empresas ativas cujo certificado vence em até `dias_alerta` dias
    (padrão NFSE_DIAS_ALERTA_CERTIFICADO) e registra um aviso para cada uma.
    """
    if dias_alerta is None:
        dias_alerta = getattr(settings, "NFSE_DIAS_ALERTA_CERTIFICADO", 30)

    alertas = []
    for empresa in certificados_a_vencer(dias=dias_alerta):
        dias = empresa.dias_para_vencimento
        if dias is not None and dias < 0:
            logger.error(
                "Certificado da empresa %s (%s) VENCIDO há %s dia(s).",
                empresa.cnpj,
                empresa.razao_social,
                abs(dias),
            )
        else:
            logger.warning(
                "Certificado da empresa %s (%s) vence em %s dia(s).",
                empresa.cnpj,
                empresa.razao_social,
                dias,
            )
        alertas.append(
            {
                "cnpj": empresa.cnpj,
                "razao_social": empresa.razao_social,
                "validade": empresa.certificado_validade.isoformat(),
                "dias_restantes": dias,
            }
        )

    return {"ok": True, "dias_alerta": dias_alerta, "alertas": alertas}

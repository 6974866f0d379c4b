# nfse/services/sefin/workflow.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from asgiref.sync import sync_to_async

from nfse.models import Empresa, Transmissao
from nfse.services.sefin import persistence
from nfse.services.sefin.client import RespostaSefin, SefinClient
from nfse.services.sefin.codec import comprimir_e_codificar, decodificar_e_descomprimir
from nfse.services.sefin.eventos import (
    ProcessadorEventos,
    consultar_eventos as _consultar_eventos,
)
from nfse.services.sefin.exceptions import (
    AuthorityRejection,
    CodecError,
    ConfigError,
    Conflict,
    CredentialError,
    SigningError,
    TransportError,
    ValidationError,
)
from nfse.services.sefin.reconciler import Reconciliador, ResultadoEmissao, Submissao
from nfse.services.sefin.signer import DocumentoAssinado, assinar_dps
from nfse.services.sefin.validator import validar_dps
from nfse.services.sefin.vault import Credencial
from nfse.services.sefin.xml_evento_builder import chave_valida
from nfse.services.sefin.xml_extractor import extrair_dps_limpa

logger = logging.getLogger("nfse.sefin")


def _falha(
    origem: str,
    mensagem: str,
    erros: Optional[List[Any]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    return {
        "sucesso": False,
        "origem": origem,
        "mensagem": mensagem,
        "erros": erros or [],
        **extra,
    }


async def _carregar_empresa(cnpj: str):
    """
    Retorna (empresa, credencial) ou lança CredentialError/ConfigError.
    """
    empresa = await sync_to_async(persistence.obter_empresa)(cnpj)
    credencial = await sync_to_async(persistence.carregar_credencial_empresa)(empresa)
    return empresa, credencial


def _resposta_emissao(resultado: ResultadoEmissao, documento: DocumentoAssinado) -> Dict[str, Any]:
    return {
        "sucesso": resultado.sucesso,
        "estado": resultado.estado.value,
        "mensagem": resultado.mensagem,
        "chave_acesso": resultado.chave_acesso,
        "erros": resultado.erros,
        "avisos": documento.avisos,
        "autorizacao_forcada": resultado.autorizacao_forcada,
        "dps": {
            "id": documento.id,
            "numero": documento.numero,
            "serie": documento.serie,
        },
        "nfse": {
            "numero": resultado.numero_nfse,
            "codigo_verificacao": resultado.codigo_verificacao,
            "data_emissao": resultado.data_emissao.isoformat() if resultado.data_emissao else None,
            "situacao": resultado.situacao,
            "link_consulta": resultado.link_consulta,
            "dados_completos": resultado.dados_completos,
            "xml": resultado.xml_nfse,
            "xml_limpo": resultado.dps_limpa,
        },
        "codigo_retorno": resultado.codigo_retorno,
        "protocolo": resultado.protocolo,
        "historico": resultado.historico,
    }


# ============================================================
# Emissão
# ============================================================


async def emitir_nfse(cnpj: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Orquestra a emissão completa:

    1) Empresa + certificado (senha descriptografada, validade conferida)
    2) Número da DPS (payload ou reservado no contador)
    3) Validação + assinatura
    4) GZip + Base64
    5) Registro local da transmissão
    6) Envio ao Sefin + reconciliação + persistência

    Erros de certificado e de validação viram resposta com sucesso=False;
    SigningError indica bug e é propagado.
    """
    # 1) Empresa e certificado
    try:
        empresa, credencial = await _carregar_empresa(cnpj)
    except CredentialError as exc:
        logger.warning("Emissão bloqueada para %s: %s", cnpj, exc)
        return _falha("CERTIFICADO", str(exc))
    except ConfigError as exc:
        logger.error("Configuração inválida ao emitir para %s: %s", cnpj, exc)
        return _falha("CONFIGURACAO", str(exc))

    # 2) Número: reservado no contador antes de assinar
    numero = payload.get("numero")
    reservado = None
    if numero in (None, "") and not payload.get("xml"):
        numero = reservado = await sync_to_async(persistence.reservar_numero_dps)(empresa)

    # 3) Validação + assinatura
    try:
        documento = assinar_dps(
            empresa.cnpj,
            payload,
            credencial,
            empresa.tipo_ambiente,
            numero=numero if numero not in (None, "") else None,
        )
    except ValidationError as exc:
        if reservado is not None:
            await sync_to_async(persistence.liberar_numero_dps)(empresa.pk, reservado)
        return _falha(
            "VALIDACAO",
            "DPS inválida. Corrija os erros e envie novamente.",
            exc.erros,
            avisos=exc.avisos,
        )
    except SigningError:
        logger.exception("Erro interno ao assinar DPS da empresa %s", cnpj)
        if reservado is not None:
            await sync_to_async(persistence.liberar_numero_dps)(empresa.pk, reservado)
        raise

    # 4) Codificação
    dps_b64 = comprimir_e_codificar(documento.xml_assinado)

    # 5) Registro local
    try:
        await sync_to_async(persistence.registrar_transmissao)(
            empresa,
            documento.id,
            documento.numero,
            documento.serie,
            documento.xml,
            documento.xml_assinado,
            dps_b64,
        )
    except Conflict as exc:
        existente = exc.existente
        return _falha(
            "CONFLITO",
            f"{exc} Use outro número de DPS.",
            id_dps=documento.id,
            chave_acesso=getattr(existente, "chave_acesso", None),
        )
    submissao = Submissao(
        id_dps=documento.id,
        empresa_id=empresa.pk,
        numero=documento.numero,
        serie=documento.serie,
    )

    # 6) Envio + reconciliação
    async with SefinClient(credencial, empresa.tipo_ambiente) as client:
        try:
            resposta = await client.enviar_dps(dps_b64)
        except TransportError as exc:
            resposta = RespostaSefin.falha_transporte(exc)
        resultado = await Reconciliador(client).reconciliar(resposta, submissao)

    logger.info(
        "Emissão DPS %s finalizada: estado=%s chave=%s",
        documento.id,
        resultado.estado.value,
        resultado.chave_acesso,
    )
    return _resposta_emissao(resultado, documento)


async def reconsultar_transmissao(id_dps: str) -> Dict[str, Any]:
    """
    Nova rodada de consultas para uma DPS que ficou AINDA_PENDENTE.
    """
    transmissao = await sync_to_async(persistence.obter_transmissao)(id_dps)
    if transmissao is None:
        return _falha("NAO_ENCONTRADA", f"Transmissão {id_dps} não encontrada.")

    empresa: Empresa = transmissao.empresa
    try:
        credencial: Credencial = await sync_to_async(persistence.carregar_credencial_empresa)(empresa)
    except (CredentialError, ConfigError) as exc:
        return _falha("CERTIFICADO", str(exc))

    submissao = Submissao(
        id_dps=transmissao.id_dps,
        empresa_id=empresa.pk,
        numero=transmissao.numero_dps,
        serie=transmissao.serie_dps,
    )
    async with SefinClient(credencial, empresa.tipo_ambiente) as client:
        resultado = await Reconciliador(client).retomar(submissao, transmissao.chave_acesso)

    return {
        "sucesso": resultado.sucesso,
        "estado": resultado.estado.value,
        "mensagem": resultado.mensagem,
        "chave_acesso": resultado.chave_acesso,
        "situacao": resultado.situacao,
    }


# ============================================================
# Eventos
# ============================================================


async def registrar_evento(cnpj: str, chave_acesso: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Cancelamento / substituição. Mesmo formato de retorno da emissão.
    """
    try:
        empresa, credencial = await _carregar_empresa(cnpj)
    except CredentialError as exc:
        return _falha("CERTIFICADO", str(exc))
    except ConfigError as exc:
        logger.error("Configuração inválida ao registrar evento para %s: %s", cnpj, exc)
        return _falha("CONFIGURACAO", str(exc))

    async with SefinClient(credencial, empresa.tipo_ambiente) as client:
        try:
            resultado = await ProcessadorEventos(empresa, credencial, client).registrar(chave_acesso, payload)
        except ValidationError as exc:
            return _falha("VALIDACAO", "Evento inválido.", exc.erros)
        except SigningError:
            logger.exception("Erro interno ao assinar evento da NFS-e %s", chave_acesso)
            raise

    return {
        "sucesso": resultado.sucesso,
        "estado": resultado.status,
        "mensagem": resultado.mensagem,
        "chave_acesso": resultado.chave_acesso,
        "erros": resultado.erros,
        "conflito": resultado.conflito,
        "evento": {
            "id": resultado.id_evento,
            "tipo": resultado.tipo_evento,
            "numero_sequencial": resultado.numero_sequencial,
            "xml_retorno": resultado.xml_retorno,
        },
    }


# ============================================================
# Validação e consultas
# ============================================================


def validar(payload: Dict[str, Any], cnpj: Optional[str] = None) -> Dict[str, Any]:
    """
    Só a validação prévia da DPS (nada é assinado nem transmitido).
    """
    return validar_dps(payload, cnpj_empresa=cnpj).as_dict()


async def consultar_nfse(cnpj: str, chave_acesso: str) -> Dict[str, Any]:
    if not chave_valida(chave_acesso):
        return _falha("VALIDACAO", "Chave de acesso deve ter 50 dígitos numéricos.")
    try:
        empresa, credencial = await _carregar_empresa(cnpj)
    except (CredentialError, ConfigError) as exc:
        return _falha("CERTIFICADO", str(exc))

    async with SefinClient(credencial, empresa.tipo_ambiente) as client:
        try:
            resposta = (await client.consultar_nfse(chave_acesso)).exigir_sucesso()
        except TransportError as exc:
            return _falha("TRANSPORTE", str(exc))
        except AuthorityRejection as exc:
            return _falha("SEFIN", str(exc), exc.erros)
        link = client.montar_link_consulta(chave_acesso)

    xml = xml_limpo = None
    conteudo = resposta.get("nfseXmlGZipB64")
    if conteudo:
        try:
            xml = decodificar_e_descomprimir(conteudo)
            xml_limpo = extrair_dps_limpa(xml)
        except CodecError as exc:
            logger.warning("NFS-e %s: XML não pôde ser processado: %s", chave_acesso, exc)

    return {
        "sucesso": True,
        "chave_acesso": chave_acesso,
        "link_consulta": link,
        "dados": {k: v for k, v in resposta.extras.items() if k != "nfseXmlGZipB64"},
        "xml": xml,
        "xml_limpo": xml_limpo,
    }


async def consultar_eventos(cnpj: str, chave_acesso: str, descomprimir: bool = False) -> Dict[str, Any]:
    if not chave_valida(chave_acesso):
        return _falha("VALIDACAO", "Chave de acesso deve ter 50 dígitos numéricos.")
    try:
        empresa, credencial = await _carregar_empresa(cnpj)
    except (CredentialError, ConfigError) as exc:
        return _falha("CERTIFICADO", str(exc))

    async with SefinClient(credencial, empresa.tipo_ambiente) as client:
        try:
            return await _consultar_eventos(client, chave_acesso, descomprimir=descomprimir)
        except TransportError as exc:
            return _falha("TRANSPORTE", str(exc))


def consultar_transmissao(cnpj: str, id_dps: str) -> Dict[str, Any]:
    """Situação local de uma DPS (sem consultar o Sefin)."""
    transmissao = (
        Transmissao.objects.filter(id_dps=id_dps, empresa__cnpj=cnpj)
        .only(
            "id_dps",
            "numero_dps",
            "serie_dps",
            "status_envio",
            "estado_processamento",
            "chave_acesso",
            "numero_nfse",
            "situacao_nfse",
            "link_consulta",
            "mensagem_retorno",
            "erros",
            "created_at",
        )
        .first()
    )
    if transmissao is None:
        return _falha("NAO_ENCONTRADA", f"Transmissão {id_dps} não encontrada.")
    return {
        "sucesso": True,
        "id_dps": transmissao.id_dps,
        "numero": transmissao.numero_dps,
        "serie": transmissao.serie_dps,
        "status_envio": transmissao.status_envio,
        "estado": transmissao.estado_processamento,
        "chave_acesso": transmissao.chave_acesso,
        "numero_nfse": transmissao.numero_nfse,
        "situacao": transmissao.situacao_nfse,
        "link_consulta": transmissao.link_consulta,
        "mensagem": transmissao.mensagem_retorno,
        "erros": transmissao.erros,
        "criada_em": transmissao.created_at.isoformat(),
    }

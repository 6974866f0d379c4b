# nfse/services/sefin/eventos.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from asgiref.sync import sync_to_async

from nfse.models import Empresa, EventoNFSe, Transmissao
from nfse.services.sefin import persistence
from nfse.services.sefin.client import SefinClient
from nfse.services.sefin.codec import comprimir_e_codificar, decodificar_e_descomprimir
from nfse.services.sefin.exceptions import CodecError, Conflict, TransportError, ValidationError
from nfse.services.sefin.reconciler import eh_duplicidade
from nfse.services.sefin.signer import assinar_evento
from nfse.services.sefin.vault import Credencial
from nfse.services.sefin.xml_evento_builder import (
    TIPO_CANCELAMENTO,
    TIPO_SUBSTITUICAO,
    gerar_id_evento,
)

logger = logging.getLogger("nfse.sefin")

ALIASES_TIPO = {
    "cancelamento": TIPO_CANCELAMENTO,
    "substituicao": TIPO_SUBSTITUICAO,
    "substituição": TIPO_SUBSTITUICAO,
    TIPO_CANCELAMENTO: TIPO_CANCELAMENTO,
    TIPO_SUBSTITUICAO: TIPO_SUBSTITUICAO,
}


@dataclass
class ResultadoEvento:
    sucesso: bool
    status: str
    mensagem: str
    chave_acesso: str
    tipo_evento: str
    numero_sequencial: int
    id_evento: str
    conflito: bool = False
    erros: List[Any] = field(default_factory=list)
    resposta: Dict[str, Any] = field(default_factory=dict)
    xml_retorno: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalizar_tipo(valor: Any) -> str:
    tipo = ALIASES_TIPO.get(str(valor or "").strip().lower())
    if tipo is None:
        raise ValidationError(
            [{"codigo": "E0300", "mensagem": f"Tipo de evento não suportado: {valor}", "campo": "tipo_evento"}],
            mensagem="Evento inválido",
        )
    return tipo


def _checar_substituta(chave_substituta: Optional[str], empresa: Empresa) -> None:
    transmissao = persistence.obter_transmissao_por_chave(chave_substituta) if chave_substituta else None
    if (
        transmissao is None
        or transmissao.empresa_id != empresa.pk
        or transmissao.situacao_nfse != Transmissao.Situacao.AUTORIZADA
    ):
        raise ValidationError(
            [
                {
                    "codigo": "E0306",
                    "mensagem": "A NFS-e substituta precisa estar autorizada e pertencer à mesma empresa",
                    "campo": "chave_substituta",
                }
            ],
            mensagem="Evento inválido",
        )


def _resultado_do_existente(evento: EventoNFSe, mensagem: str) -> ResultadoEvento:
    return ResultadoEvento(
        sucesso=evento.status == EventoNFSe.Status.REGISTRADO,
        status=evento.status,
        mensagem=mensagem,
        chave_acesso=evento.chave_acesso,
        tipo_evento=evento.tipo_evento,
        numero_sequencial=evento.numero_sequencial,
        id_evento=evento.id_evento,
        conflito=True,
        erros=evento.erros or [],
        xml_retorno=evento.xml_retorno or None,
    )


def _decodificar_retorno(corpo: Dict[str, Any], referencia: str) -> Optional[str]:
    conteudo = corpo.get("eventoXmlGZipB64")
    if not conteudo:
        return None
    try:
        return decodificar_e_descomprimir(conteudo)
    except CodecError as exc:
        logger.error("Evento %s: XML de retorno não pôde ser decodificado: %s", referencia, exc)
        return None


class ProcessadorEventos:
    """
    Cancelamento (101101) e substituição (105102) de NFS-e já emitidas.
    """

    def __init__(self, empresa: Empresa, credencial: Credencial, client: SefinClient):
        self.empresa = empresa
        self.credencial = credencial
        self.client = client

    async def registrar(self, chave_acesso: str, payload: Dict[str, Any]) -> ResultadoEvento:
        tipo_evento = normalizar_tipo(payload.get("tipo_evento") or payload.get("tipo"))
        numero_sequencial = payload.get("numero_sequencial") or 1
        chave_substituta = payload.get("chave_substituta") or None

        # 1) Assinatura (inclui validação de motivo, chave e sequência)
        documento = assinar_evento(
            self.empresa.cnpj,
            tipo_evento,
            chave_acesso,
            payload.get("codigo_motivo"),
            payload.get("motivo") or "",
            self.credencial,
            self.empresa.tipo_ambiente,
            numero_sequencial=numero_sequencial,
            chave_substituta=chave_substituta,
        )
        numero_sequencial = documento.numero

        if tipo_evento == TIPO_SUBSTITUICAO:
            await sync_to_async(_checar_substituta)(chave_substituta, self.empresa)

        # 2) Mesmo (chave, tipo, sequência) já existe?
        existente = await sync_to_async(persistence.buscar_evento)(chave_acesso, tipo_evento, numero_sequencial)
        if existente is not None:
            if existente.status != EventoNFSe.Status.PENDENTE:
                logger.info("Evento %s já existe (status=%s); não será reenviado.", existente.id_evento, existente.status)
                return _resultado_do_existente(existente, "Evento já enviado anteriormente.")
            return await self._retomar_pendente(existente)

        # 3) Inserção PENDENTE (a unicidade do banco protege contra corrida)
        try:
            evento = await sync_to_async(persistence.inserir_evento)(
                self.empresa,
                chave_acesso=chave_acesso,
                tipo_evento=tipo_evento,
                numero_sequencial=numero_sequencial,
                id_evento=documento.id,
                codigo_motivo=int(payload.get("codigo_motivo")),
                motivo=(payload.get("motivo") or "").strip(),
                chave_substituta=chave_substituta or "",
                xml_evento=documento.xml,
                xml_assinado=documento.xml_assinado,
                status=EventoNFSe.Status.PENDENTE,
            )
        except Conflict as exc:
            if exc.existente is None:
                raise
            return _resultado_do_existente(exc.existente, "Evento já enviado anteriormente.")

        return await self._enviar(evento)

    async def _retomar_pendente(self, evento: EventoNFSe) -> ResultadoEvento:
        """
        Evento gravado mas sem confirmação (falha de transporte no envio anterior):
        pergunta ao Sefin antes de reenviar.
        """
        try:
            resposta = await self.client.consultar_evento(
                evento.chave_acesso,
                evento.tipo_evento,
                evento.numero_sequencial,
            )
        except TransportError as exc:
            logger.warning("Evento %s: consulta prévia sem resposta (%s); reenviando.", evento.id_evento, exc)
            resposta = None

        if resposta is not None and resposta.ok:
            await sync_to_async(persistence.atualizar_evento)(
                evento,
                status=EventoNFSe.Status.REGISTRADO,
                resposta_completa=resposta.corpo,
                xml_retorno=_decodificar_retorno(resposta.dados, evento.id_evento) or "",
            )
            return _resultado_do_existente(evento, "Evento já registrado no Sefin.")

        return await self._enviar(evento)

    async def _enviar(self, evento: EventoNFSe) -> ResultadoEvento:
        resultado = ResultadoEvento(
            sucesso=False,
            status=EventoNFSe.Status.PENDENTE,
            mensagem="",
            chave_acesso=evento.chave_acesso,
            tipo_evento=evento.tipo_evento,
            numero_sequencial=evento.numero_sequencial,
            id_evento=evento.id_evento,
        )

        try:
            resposta = await self.client.registrar_evento(
                evento.chave_acesso,
                comprimir_e_codificar(evento.xml_assinado),
            )
        except TransportError as exc:
            # fica PENDENTE; a próxima chamada consulta antes de reenviar
            resultado.mensagem = f"Falha de comunicação com o Sefin: {exc}"
            resultado.erros = [{"origem": "TRANSPORTE", "mensagem": str(exc)}]
            logger.warning("Evento %s sem resposta do Sefin: %s", evento.id_evento, exc)
            return resultado

        resultado.resposta = resposta.as_dict()
        campos: Dict[str, Any] = {
            "resposta_completa": resposta.corpo,
            "codigo_retorno": resposta.codigo or "",
            "mensagem_retorno": resposta.mensagem or "",
        }

        if resposta.ok:
            resultado.sucesso = True
            resultado.status = EventoNFSe.Status.REGISTRADO
            resultado.mensagem = "Evento registrado com sucesso."
            resultado.xml_retorno = _decodificar_retorno(resposta.dados, evento.id_evento)
            campos["xml_retorno"] = resultado.xml_retorno or ""
        elif eh_duplicidade(resposta.erros):
            resultado.sucesso = True
            resultado.conflito = True
            resultado.status = EventoNFSe.Status.REGISTRADO
            resultado.mensagem = "Evento já registrado no Sefin."
        else:
            resultado.status = EventoNFSe.Status.REJEITADO
            resultado.erros = resposta.erros or [resposta.corpo]
            resultado.mensagem = resposta.mensagem or f"Evento rejeitado pelo Sefin (HTTP {resposta.status_http})."
            campos["erros"] = resultado.erros

        campos["status"] = resultado.status
        await sync_to_async(persistence.atualizar_evento)(evento, **campos)

        logger.info(
            "Evento %s -> %s",
            evento.id_evento,
            resultado.status,
            extra={
                "evento": "nfse.evento",
                "nfse_id_evento": evento.id_evento,
                "nfse_status": resultado.status,
            },
        )
        return resultado


# ============================================================
# Consultas
# ============================================================


async def consultar_eventos(client: SefinClient, chave_acesso: str, descomprimir: bool = False) -> Dict[str, Any]:
    """
    Lista os eventos da NFS-e no Sefin. HTTP 404 = nenhum evento.
    """
    resposta = await client.consultar_eventos(chave_acesso)
    if resposta.status_http == 404:
        return {"sucesso": True, "chave_acesso": chave_acesso, "eventos": []}
    if not resposta.ok:
        return {
            "sucesso": False,
            "chave_acesso": chave_acesso,
            "mensagem": resposta.mensagem or f"Erro HTTP {resposta.status_http}",
            "erros": resposta.erros or [resposta.corpo],
        }

    corpo = resposta.corpo
    eventos = corpo if isinstance(corpo, list) else (resposta.get("eventos") or [])
    if descomprimir:
        for item in eventos:
            if isinstance(item, dict) and item.get("eventoXmlGZipB64"):
                item["xml"] = _decodificar_retorno(item, chave_acesso)
    return {"sucesso": True, "chave_acesso": chave_acesso, "eventos": eventos}


async def consultar_evento(
    client: SefinClient,
    chave_acesso: str,
    tipo_evento: str,
    numero_sequencial: int = 1,
) -> Dict[str, Any]:
    resposta = await client.consultar_evento(chave_acesso, tipo_evento, numero_sequencial)
    if not resposta.ok:
        return {
            "sucesso": False,
            "mensagem": resposta.mensagem or f"Erro HTTP {resposta.status_http}",
            "erros": resposta.erros or [resposta.corpo],
        }
    id_evento = gerar_id_evento(chave_acesso, tipo_evento, numero_sequencial)
    return {
        "sucesso": True,
        "id_evento": id_evento,
        "xml": _decodificar_retorno(resposta.dados, id_evento),
        "dados": resposta.corpo,
    }

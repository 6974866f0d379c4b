# nfse/services/sefin/reconciler.py
# -*- coding: utf-8 -*-
"""
Reconciliação da resposta do Sefin Nacional.

Estados:

    ENVIADA -> AUTORIZADA | PENDENTE | REJEITADA | DUPLICADA
    PENDENTE -> (consulta do idDPS) -> AUTORIZADA | AINDA_PENDENTE
    DUPLICADA -> (chave local ou consulta do idDPS) -> AUTORIZADA | SEM_CHAVE

Terminais: AUTORIZADA, REJEITADA, AINDA_PENDENTE (sucesso incompleto),
SEM_CHAVE (aceita mas sem chave; não é mais consultada aqui).
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.utils import timezone

from asgiref.sync import sync_to_async

from nfse.models import Transmissao
from nfse.services.sefin import persistence
from nfse.services.sefin.client import RespostaSefin, SefinClient, TipoResposta
from nfse.services.sefin.codec import decodificar_e_descomprimir
from nfse.services.sefin.exceptions import CodecError, TransportError
from nfse.services.sefin.xml_dps_builder import parse_data_hora
from nfse.services.sefin.xml_extractor import extrair_dps_limpa

logger = logging.getLogger("nfse.sefin")

CODIGO_AUTORIZADA = "100"
CODIGO_EM_PROCESSAMENTO = "105"
CODIGOS_DUPLICIDADE = ("E0014", "E174")
SITUACOES_EM_PROCESSAMENTO = ("pendente", "em processamento")

MENSAGEM_AINDA_PENDENTE = "DPS aceita. Consulte novamente em breve."


class EstadoProcessamento(str, Enum):
    ENVIADA = "ENVIADA"
    AUTORIZADA = "AUTORIZADA"
    PENDENTE = "PENDENTE"
    REJEITADA = "REJEITADA"
    DUPLICADA = "DUPLICADA"
    AINDA_PENDENTE = "AINDA_PENDENTE"
    SEM_CHAVE = "SEM_CHAVE"


@dataclass
class Submissao:
    """O que o reconciliador precisa saber da DPS enviada."""

    id_dps: str
    empresa_id: int
    numero: int
    serie: str = ""


@dataclass
class ResultadoEmissao:
    sucesso: bool
    estado: EstadoProcessamento
    mensagem: str
    id_dps: str
    chave_acesso: Optional[str] = None
    numero_nfse: Optional[str] = None
    codigo_verificacao: Optional[str] = None
    data_emissao: Optional[datetime] = None
    situacao: Optional[str] = None
    xml_nfse: Optional[str] = None
    dps_limpa: Optional[str] = None
    link_consulta: Optional[str] = None
    codigo_retorno: Optional[str] = None
    protocolo: Optional[str] = None
    dados_completos: bool = False
    autorizacao_forcada: bool = False
    erros: List[Any] = field(default_factory=list)
    resposta: Dict[str, Any] = field(default_factory=dict)
    historico: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["estado"] = self.estado.value
        if self.data_emissao:
            data["data_emissao"] = self.data_emissao.isoformat()
        return data


def eh_duplicidade(erros: List[Any]) -> bool:
    """
    Duplicidade: Codigo E0014/E174 ou descrição contendo "já existe".
    """
    for erro in erros:
        if not isinstance(erro, dict):
            continue
        codigo = str(erro.get("Codigo") or erro.get("codigo") or "")
        descricao = str(erro.get("Descricao") or erro.get("descricao") or "")
        if codigo in CODIGOS_DUPLICIDADE or "já existe" in descricao.lower():
            return True
    return False


def _falha_de_transporte(erros: List[Any]) -> bool:
    return any(isinstance(e, dict) and e.get("origem") == "TRANSPORTE" for e in erros)


def _primeiro(dados: Dict[str, Any], *campos: str) -> Optional[Any]:
    for campo in campos:
        valor = dados.get(campo)
        if valor not in (None, ""):
            return valor
    return None


async def _dormir(segundos: float) -> None:
    if segundos > 0:
        await asyncio.sleep(segundos)


class Reconciliador:
    """
    Executa o protocolo de reconciliação de uma DPS enviada.

    A política de retentativa mora aqui: só as consultas do idDPS são
    repetidas (no máximo `max_tentativas`, espera de `backoff * tentativa`
    segundos antes de cada tentativa após a primeira).
    """

    def __init__(
        self,
        client: SefinClient,
        max_tentativas: Optional[int] = None,
        backoff: Optional[float] = None,
        espera_pendente: Optional[float] = None,
        persistir: bool = True,
    ):
        self.client = client
        self.max_tentativas = (
            max_tentativas
            if max_tentativas is not None
            else getattr(settings, "NFSE_POLL_MAX_TENTATIVAS", 3)
        )
        self.backoff = backoff if backoff is not None else getattr(settings, "NFSE_POLL_BACKOFF", 3)
        self.espera_pendente = (
            espera_pendente
            if espera_pendente is not None
            else getattr(settings, "NFSE_ESPERA_PENDENTE", 5)
        )
        self.persistir = persistir

    # -------------------------
    # Observabilidade
    # -------------------------

    def _transicao(self, resultado: ResultadoEmissao, novo: EstadoProcessamento, **dados: Any) -> None:
        anterior = resultado.estado
        resultado.estado = novo
        registro = {
            "de": anterior.value,
            "para": novo.value,
            "em": timezone.now().isoformat(),
            **dados,
        }
        resultado.historico.append(registro)
        logger.info(
            "DPS %s: %s -> %s %s",
            resultado.id_dps,
            anterior.value,
            novo.value,
            dados or "",
            extra={
                "evento": "nfse.transicao",
                "nfse_id_dps": resultado.id_dps,
                "nfse_de": anterior.value,
                "nfse_para": novo.value,
                "nfse_dados": dados,
            },
        )

    # -------------------------
    # Protocolo
    # -------------------------

    async def reconciliar(self, resposta: RespostaSefin, submissao: Submissao) -> ResultadoEmissao:
        resultado = ResultadoEmissao(
            sucesso=False,
            estado=EstadoProcessamento.ENVIADA,
            mensagem="",
            id_dps=submissao.id_dps,
            codigo_retorno=resposta.codigo,
            protocolo=resposta.protocolo,
            resposta=resposta.as_dict(),
        )
        resultado.historico.append(
            {
                "de": None,
                "para": EstadoProcessamento.ENVIADA.value,
                "em": timezone.now().isoformat(),
                "status_http": resposta.status_http,
                "codigo": resposta.codigo,
            }
        )

        # 1) Sem resposta HTTP
        if resposta.tipo == TipoResposta.FALHA_TRANSPORTE:
            resultado.erros = [{"origem": "TRANSPORTE", "mensagem": resposta.erro_transporte}]
            resultado.mensagem = f"Falha de comunicação com o Sefin: {resposta.erro_transporte}"
            self._transicao(resultado, EstadoProcessamento.REJEITADA, motivo="transporte")
            return await self._finalizar(resultado, submissao)

        chave = resposta.chave_acesso
        codigo = resposta.codigo

        # 2) Duplicidade: recuperar a chave já atribuída a esta DPS
        if eh_duplicidade(resposta.erros):
            self._transicao(resultado, EstadoProcessamento.DUPLICADA, codigo=codigo)
            chave = chave or await sync_to_async(persistence.buscar_chave_por_id_dps)(submissao.id_dps)
            if chave:
                logger.info("DPS %s duplicada; chave local %s recuperada.", submissao.id_dps, chave)

        # 3) Erro estruturado (não duplicidade)
        elif not resposta.ok:
            resultado.erros = resposta.erros or [resposta.corpo]
            resultado.mensagem = resposta.mensagem or f"DPS rejeitada pelo Sefin (HTTP {resposta.status_http})."
            self._transicao(resultado, EstadoProcessamento.REJEITADA, status_http=resposta.status_http)
            return await self._finalizar(resultado, submissao)

        # 4) Sucesso estrutural
        elif codigo == CODIGO_AUTORIZADA:
            self._transicao(resultado, EstadoProcessamento.AUTORIZADA, codigo=codigo)

        elif codigo == CODIGO_EM_PROCESSAMENTO:
            self._transicao(resultado, EstadoProcessamento.PENDENTE, codigo=codigo)
            await _dormir(self.espera_pendente)

        elif chave:
            # TODO: revisar quando o Sefin publicar a tabela de códigos de retorno; hoje a chave prevalece
            resultado.autorizacao_forcada = True
            logger.warning(
                "DPS %s: código atípico %r com chave %s; tratando como autorizada.",
                submissao.id_dps,
                codigo,
                chave,
            )
            self._transicao(resultado, EstadoProcessamento.AUTORIZADA, codigo=codigo, forcada=True)

        else:
            resultado.erros = resposta.erros or [resposta.corpo]
            resultado.mensagem = resposta.mensagem or f"Código de retorno inesperado: {codigo}"
            self._transicao(resultado, EstadoProcessamento.REJEITADA, codigo=codigo)
            return await self._finalizar(resultado, submissao)

        # 5) Chave ainda desconhecida: consultar pelo idDPS
        if not chave:
            chave = await self._consultar_chave(resultado, submissao.id_dps)

        if not chave:
            if resultado.estado == EstadoProcessamento.PENDENTE:
                resultado.sucesso = True
                resultado.mensagem = MENSAGEM_AINDA_PENDENTE
                resultado.situacao = Transmissao.Situacao.PENDENTE
                self._transicao(resultado, EstadoProcessamento.AINDA_PENDENTE)
            else:
                resultado.mensagem = (
                    "DPS aceita, mas a chave de acesso não ficou disponível após "
                    f"{self.max_tentativas} consulta(s)."
                )
                self._transicao(resultado, EstadoProcessamento.SEM_CHAVE)
            return await self._finalizar(resultado, submissao)

        # 6) Chave conhecida
        resultado.chave_acesso = chave
        if resultado.estado != EstadoProcessamento.AUTORIZADA:
            self._transicao(resultado, EstadoProcessamento.AUTORIZADA, chave_acesso=chave)
        resultado.sucesso = True
        await self._buscar_documento(resultado)
        return await self._finalizar(resultado, submissao)

    async def retomar(self, submissao: Submissao, chave_acesso: Optional[str] = None) -> ResultadoEmissao:
        """
        Reconsulta uma DPS que terminou em AINDA_PENDENTE (ou sem dados completos).
        """
        resultado = ResultadoEmissao(
            sucesso=False,
            estado=EstadoProcessamento.PENDENTE,
            mensagem="",
            id_dps=submissao.id_dps,
        )
        chave = chave_acesso or await self._consultar_chave(resultado, submissao.id_dps)
        if not chave:
            resultado.sucesso = True
            resultado.mensagem = MENSAGEM_AINDA_PENDENTE
            resultado.situacao = Transmissao.Situacao.PENDENTE
            self._transicao(resultado, EstadoProcessamento.AINDA_PENDENTE)
            return await self._finalizar(resultado, submissao)

        resultado.chave_acesso = chave
        resultado.sucesso = True
        self._transicao(resultado, EstadoProcessamento.AUTORIZADA, chave_acesso=chave)
        await self._buscar_documento(resultado)
        return await self._finalizar(resultado, submissao)

    async def _consultar_chave(self, resultado: ResultadoEmissao, id_dps: str) -> Optional[str]:
        for tentativa in range(1, self.max_tentativas + 1):
            if tentativa > 1:
                await _dormir(self.backoff * tentativa)

            try:
                resposta = await self.client.consultar_chave_acesso(id_dps)
            except TransportError as exc:
                logger.warning("Consulta %s/%s do idDPS %s sem resposta: %s", tentativa, self.max_tentativas, id_dps, exc)
                resposta = None

            chave = resposta.chave_acesso if resposta is not None and resposta.ok else None
            logger.info(
                "Consulta %s/%s do idDPS %s: %s",
                tentativa,
                self.max_tentativas,
                id_dps,
                chave or "não disponível",
                extra={
                    "evento": "nfse.consulta_chave",
                    "nfse_id_dps": id_dps,
                    "nfse_tentativa": tentativa,
                    "nfse_encontrada": bool(chave),
                },
            )
            resultado.historico.append(
                {"consulta": tentativa, "encontrada": bool(chave), "em": timezone.now().isoformat()}
            )
            if chave:
                return chave
        return None

    async def _buscar_documento(self, resultado: ResultadoEmissao) -> None:
        """
        Busca a NFS-e completa. Falhas aqui não derrubam a autorização:
        a NFS-e continua autorizada, só sem os dados completos.
        """
        chave = resultado.chave_acesso
        resultado.link_consulta = self.client.montar_link_consulta(chave)
        resultado.situacao = Transmissao.Situacao.AUTORIZADA

        try:
            resposta = await self.client.consultar_nfse(chave)
        except TransportError as exc:
            logger.warning("NFS-e %s autorizada, mas a consulta falhou: %s", chave, exc)
            resultado.mensagem = "NFS-e autorizada. Dados completos ainda não disponíveis."
            return

        if not resposta.ok:
            logger.warning(
                "NFS-e %s autorizada, mas a consulta retornou HTTP %s.",
                chave,
                resposta.status_http,
            )
            resultado.mensagem = "NFS-e autorizada. Dados completos ainda não disponíveis."
            return

        dados = resposta.dados
        resultado.numero_nfse = _primeiro(dados, "numero", "numeroNFSe", "nNFSe")
        resultado.codigo_verificacao = _primeiro(dados, "codigoVerificacao", "codVerificacao")
        resultado.data_emissao = parse_data_hora(
            _primeiro(dados, "dataEmissao", "dhEmi", "dataHoraProcessamento")
        )
        situacao = str(_primeiro(dados, "situacao") or "Autorizada")
        if situacao.strip().lower() in SITUACOES_EM_PROCESSAMENTO:
            resultado.situacao = Transmissao.Situacao.PROCESSANDO

        conteudo = dados.get("nfseXmlGZipB64")
        if conteudo:
            try:
                resultado.xml_nfse = decodificar_e_descomprimir(conteudo)
            except CodecError as exc:
                logger.error("NFS-e %s: XML retornado não pôde ser decodificado: %s", chave, exc)
            if resultado.xml_nfse:
                try:
                    resultado.dps_limpa = extrair_dps_limpa(resultado.xml_nfse)
                except CodecError as exc:
                    logger.warning("NFS-e %s: falha ao gerar XML limpo, mantendo o original: %s", chave, exc)

        resultado.dados_completos = True
        resultado.mensagem = (
            "NFS-e autorizada."
            if resultado.situacao == Transmissao.Situacao.AUTORIZADA
            else "NFS-e em processamento no Sefin."
        )

    # -------------------------
    # Persistência
    # -------------------------

    async def _finalizar(self, resultado: ResultadoEmissao, submissao: Submissao) -> ResultadoEmissao:
        if resultado.estado == EstadoProcessamento.REJEITADA and resultado.erros:
            logger.warning("DPS %s rejeitada: %s", submissao.id_dps, resultado.erros)

        if not self.persistir:
            return resultado

        campos = {
            "status_envio": (
                Transmissao.StatusEnvio.SUCESSO if resultado.sucesso else Transmissao.StatusEnvio.ERRO
            ),
            "estado_processamento": resultado.estado.value,
            "codigo_retorno": resultado.codigo_retorno,
            "mensagem_retorno": resultado.mensagem,
            "protocolo": resultado.protocolo,
            "erros": resultado.erros,
            "chave_acesso": resultado.chave_acesso,
            "numero_nfse": resultado.numero_nfse,
            "codigo_verificacao": resultado.codigo_verificacao,
            "data_emissao_nfse": resultado.data_emissao,
            "situacao_nfse": (
                Transmissao.Situacao.REJEITADA
                if resultado.estado == EstadoProcessamento.REJEITADA
                else resultado.situacao
            ),
            "xml_nfse": resultado.xml_nfse,
            "dps_limpa": resultado.dps_limpa,
            "link_consulta": resultado.link_consulta,
        }
        if resultado.resposta:
            campos["resposta_completa"] = resultado.resposta.get("corpo") or {}
            campos["tempo_processamento_ms"] = resultado.resposta.get("tempo_ms")

        transmissao = await sync_to_async(persistence.salvar_resultado)(submissao.id_dps, campos)
        if transmissao is not None and transmissao.chave_acesso:
            # a chave já registrada prevalece
            resultado.chave_acesso = transmissao.chave_acesso

        # só a rejeição estruturada do Sefin prova que o número não foi consumido
        if resultado.estado != EstadoProcessamento.REJEITADA or _falha_de_transporte(resultado.erros):
            await sync_to_async(persistence.atualizar_ultimo_numero)(submissao.empresa_id, submissao.numero)

        return resultado


async def reconciliar(
    resposta: RespostaSefin,
    submissao: Submissao,
    client: SefinClient,
    **opcoes: Any,
) -> ResultadoEmissao:
    return await Reconciliador(client, **opcoes).reconciliar(resposta, submissao)

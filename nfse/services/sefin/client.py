# nfse/services/sefin/client.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from django.conf import settings

from asgiref.sync import sync_to_async
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from nfse.services.sefin.exceptions import AuthorityRejection, ConfigError, TransportError
from nfse.services.sefin.vault import Credencial

logger = logging.getLogger("nfse.sefin")


# =========================
# Endpoints Sefin Nacional (fixos por ambiente)
# =========================

AMBIENTE_PRODUCAO = "1"
AMBIENTE_HOMOLOGACAO = "2"

BASE_URLS = {
    AMBIENTE_PRODUCAO: "https://sefin.nfse.gov.br/SefinNacional",
    AMBIENTE_HOMOLOGACAO: "https://sefin.producaorestrita.nfse.gov.br/SefinNacional",
}

NOMES_AMBIENTE = {
    AMBIENTE_PRODUCAO: "PRODUÇÃO",
    AMBIENTE_HOMOLOGACAO: "PRODUÇÃO RESTRITA",
}

USER_AGENT = "NFSeNacional/1.0 (Python/requests)"

# Campos da resposta que têm propriedade própria em RespostaSefin
CAMPOS_CONHECIDOS = {
    "codigo",
    "codigoRetorno",
    "chaveAcesso",
    "ChaveAcesso",
    "protocolo",
    "idDps",
    "idDPS",
    "mensagem",
    "descricao",
    "erros",
    "Erros",
    "erro",
}


class TipoResposta(str, Enum):
    SUCESSO = "SUCESSO"
    ERRO_ESTRUTURADO = "ERRO_ESTRUTURADO"
    FALHA_TRANSPORTE = "FALHA_TRANSPORTE"


@dataclass
class RespostaSefin:
    """
    Resposta normalizada do Sefin.

    - tipo: SUCESSO (HTTP 2xx), ERRO_ESTRUTURADO (HTTP com corpo de erro)
      ou FALHA_TRANSPORTE (nenhuma resposta HTTP).
    - corpo: JSON devolvido (ou {"texto": ...} quando não é JSON).
    - Campos conhecidos viram propriedades; o resto fica em `extras`.
    """

    tipo: TipoResposta
    status_http: Optional[int] = None
    corpo: Any = field(default_factory=dict)
    tempo_ms: int = 0
    erro_transporte: Optional[str] = None

    @classmethod
    def falha_transporte(cls, exc: Exception) -> "RespostaSefin":
        return cls(
            tipo=TipoResposta.FALHA_TRANSPORTE,
            corpo={},
            erro_transporte=str(exc),
        )

    @property
    def ok(self) -> bool:
        return self.tipo == TipoResposta.SUCESSO

    @property
    def dados(self) -> Dict[str, Any]:
        return self.corpo if isinstance(self.corpo, dict) else {}

    def get(self, campo: str, default: Any = None) -> Any:
        return self.dados.get(campo, default)

    @property
    def codigo(self) -> Optional[str]:
        valor = self.dados.get("codigo")
        if valor in (None, ""):
            valor = self.dados.get("codigoRetorno")
        return None if valor in (None, "") else str(valor)

    @property
    def chave_acesso(self) -> Optional[str]:
        return self.dados.get("chaveAcesso") or self.dados.get("ChaveAcesso") or None

    @property
    def protocolo(self) -> Optional[str]:
        return self.dados.get("protocolo") or self.dados.get("idDps") or self.dados.get("idDPS")

    @property
    def mensagem(self) -> Optional[str]:
        if self.erro_transporte:
            return self.erro_transporte
        return self.dados.get("mensagem") or self.dados.get("descricao") or self.dados.get("erro")

    @property
    def erros(self) -> List[Any]:
        """Lista de erros do Sefin, sem tradução."""
        erros = self.dados.get("erros")
        if erros is None:
            erros = self.dados.get("Erros")
        if erros is None:
            return []
        if isinstance(erros, dict):
            return [erros]
        return list(erros)

    @property
    def extras(self) -> Dict[str, Any]:
        return {k: v for k, v in self.dados.items() if k not in CAMPOS_CONHECIDOS}

    def exigir_sucesso(self) -> "RespostaSefin":
        """
        Lança AuthorityRejection (erros do Sefin sem tradução) quando a
        resposta não é 2xx. Retorna a própria resposta caso contrário.
        """
        if not self.ok:
            raise AuthorityRejection(
                self.erros or [self.corpo],
                self.mensagem or f"Erro HTTP {self.status_http}",
            )
        return self

    def as_dict(self) -> Dict[str, Any]:
        return {
            "tipo": self.tipo.value,
            "status_http": self.status_http,
            "corpo": self.corpo,
            "tempo_ms": self.tempo_ms,
            "erro_transporte": self.erro_transporte,
        }


class SefinClient:
    """
    Cliente HTTP do Sefin Nacional com TLS mútuo (certificado A1 da empresa).

    - Ambiente fixo na construção ('1' produção, '2' produção restrita).
    - Em produção o certificado do servidor é sempre verificado; na produção
      restrita segue NFSE_SANDBOX_VERIFY_SSL.
    - Nunca repete chamadas: a política de retentativa é da reconciliação.
    - Sem resposta HTTP (timeout, TLS, conexão) -> TransportError.

    Uso:
        async with SefinClient(credencial, "2") as client:
            resposta = await client.enviar_dps(b64)
    """

    def __init__(self, credencial: Credencial, tipo_ambiente: str, timeout: Optional[int] = None):
        if tipo_ambiente not in BASE_URLS:
            raise ConfigError(f"Ambiente inválido: {tipo_ambiente!r} (use '1' ou '2').")

        self.tipo_ambiente = tipo_ambiente
        self.base_url = BASE_URLS[tipo_ambiente]
        self.timeout = timeout or getattr(settings, "NFSE_SEFIN_TIMEOUT", 30)

        if tipo_ambiente == AMBIENTE_PRODUCAO:
            self.verify_ssl = True
        else:
            self.verify_ssl = bool(getattr(settings, "NFSE_SANDBOX_VERIFY_SSL", False))

        # -------------------------------
        # Identidade TLS do cliente (PEM em diretório privado)
        # -------------------------------
        self._tmpdir = tempfile.mkdtemp(prefix="nfse-tls-")
        cert_path = os.path.join(self._tmpdir, "cert.pem")
        key_path = os.path.join(self._tmpdir, "key.pem")
        try:
            self._escrever_privado(cert_path, credencial.certificate_pem())
            self._escrever_privado(key_path, credencial.private_key_pem())
        except Exception:
            # a chave privada não pode ficar em disco
            shutil.rmtree(self._tmpdir, ignore_errors=True)
            raise

        # -------------------------------
        # Session sem retry automático
        # -------------------------------
        session = requests.Session()
        session.cert = (cert_path, key_path)
        session.verify = self.verify_ssl
        session.headers.update(
            {
                "User-Agent": USER_AGENT,
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )
        adapter = HTTPAdapter(max_retries=Retry(total=0, raise_on_status=False))
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        self.session = session

        logger.info(
            "Inicializando SefinClient ambiente=%s [base=%s, verify_ssl=%s, timeout=%s, titular=%s]",
            NOMES_AMBIENTE[tipo_ambiente],
            self.base_url,
            self.verify_ssl,
            self.timeout,
            credencial.titular,
        )

    @staticmethod
    def _escrever_privado(caminho: str, conteudo: bytes) -> None:
        fd = os.open(caminho, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(conteudo)

    def close(self) -> None:
        self.session.close()
        shutil.rmtree(self._tmpdir, ignore_errors=True)

    def __enter__(self) -> "SefinClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    async def __aenter__(self) -> "SefinClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    # -------------------------
    # HTTP
    # -------------------------

    def _url(self, *partes: str) -> str:
        return self.base_url + "".join("/" + quote(str(p), safe="") for p in partes)

    def _request_sync(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> RespostaSefin:
        inicio = time.monotonic()
        try:
            response = self.session.request(method, url, json=payload, timeout=self.timeout)
        except requests.exceptions.SSLError as exc:
            logger.error("Falha TLS em %s %s: %s", method, url, exc)
            raise TransportError(f"Falha na negociação TLS com o Sefin: {exc}") from exc
        except requests.Timeout as exc:
            logger.error("Timeout (%ss) em %s %s", self.timeout, method, url)
            raise TransportError(f"Timeout de {self.timeout}s ao chamar o Sefin.") from exc
        except requests.RequestException as exc:
            logger.error("Erro de rede em %s %s: %s", method, url, exc)
            raise TransportError(f"Não foi possível conectar ao Sefin: {exc}") from exc

        tempo_ms = int((time.monotonic() - inicio) * 1000)

        try:
            corpo = response.json()
        except ValueError:
            corpo = {"texto": response.text[:2000]} if response.text else {}

        tipo = TipoResposta.SUCESSO if 200 <= response.status_code < 300 else TipoResposta.ERRO_ESTRUTURADO

        logger.info(
            "Sefin %s %s -> HTTP %s (%sms)",
            method,
            url,
            response.status_code,
            tempo_ms,
        )
        return RespostaSefin(
            tipo=tipo,
            status_http=response.status_code,
            corpo=corpo,
            tempo_ms=tempo_ms,
        )

    async def _request(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> RespostaSefin:
        return await sync_to_async(self._request_sync, thread_sensitive=False)(method, url, payload)

    # -------------------------
    # Operações
    # -------------------------

    async def enviar_dps(self, dps_xml_gzip_b64: str) -> RespostaSefin:
        """POST /nfse com {"dpsXmlGZipB64": ...}."""
        return await self._request(
            "POST",
            self._url("nfse"),
            {"dpsXmlGZipB64": dps_xml_gzip_b64},
        )

    async def consultar_chave_acesso(self, id_dps: str) -> RespostaSefin:
        """GET /dps/{idDPS}. HTTP 404 significa que a DPS ainda não foi processada."""
        return await self._request("GET", self._url("dps", id_dps))

    async def consultar_nfse(self, chave_acesso: str) -> RespostaSefin:
        """GET /nfse/{chave}: a NFS-e com nfseXmlGZipB64."""
        return await self._request("GET", self._url("nfse", chave_acesso))

    async def registrar_evento(self, chave_acesso: str, evento_xml_gzip_b64: str) -> RespostaSefin:
        return await self._request(
            "POST",
            self._url("nfse", chave_acesso, "eventos"),
            {"pedidoRegistroEventoXmlGZipB64": evento_xml_gzip_b64},
        )

    async def consultar_eventos(self, chave_acesso: str) -> RespostaSefin:
        """GET /nfse/{chave}/eventos. HTTP 404 = nenhum evento."""
        return await self._request("GET", self._url("nfse", chave_acesso, "eventos"))

    async def consultar_evento(self, chave_acesso: str, tipo_evento: str, numero_sequencial: int) -> RespostaSefin:
        return await self._request(
            "GET",
            self._url("nfse", chave_acesso, "eventos", tipo_evento, int(numero_sequencial)),
        )

    def montar_link_consulta(self, chave_acesso: str) -> str:
        return self._url("nfse", chave_acesso)

# nfse/services/sefin/exceptions.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from typing import Any, Dict, List, Optional


class SefinError(Exception):
    """Base de todos os erros do motor NFS-e."""


class ConfigError(SefinError):
    """Configuração ausente ou inválida (ex.: NFSE_ENCRYPTION_KEY)."""


class CredentialError(SefinError):
    """Certificado/senha inválidos, PKCS#12 corrompido ou certificado fora da validade."""


class ValidationError(SefinError):
    """
    Violação de regras de negócio da DPS ou do evento.

    `erros` e `avisos` são listas de dicts {codigo, mensagem, campo}, para que
    o chamador possa mostrar todos os problemas de uma vez.
    """

    def __init__(
        self,
        erros: List[Dict[str, Any]],
        avisos: Optional[List[Dict[str, Any]]] = None,
        mensagem: str = "Validação falhou.",
    ):
        self.erros = list(erros)
        self.avisos = list(avisos or [])
        super().__init__(f"{mensagem} ({len(self.erros)} erro(s))")


class SigningError(SefinError):
    """Falha interna ao assinar (Id não localizado, erro criptográfico). Indica bug."""


class CodecError(SefinError):
    """Conteúdo GZip/Base64 ou XML malformado."""


class TransportError(SefinError):
    """Sem resposta HTTP: timeout, falha TLS ou de conexão."""


class AuthorityRejection(SefinError):
    """Rejeição estruturada do Sefin. `erros` é repassado sem tradução."""

    def __init__(self, erros: List[Any], mensagem: str = "Rejeitado pelo Sefin."):
        self.erros = list(erros)
        super().__init__(mensagem)


class Conflict(SefinError):
    """Operação local duplicada (mesma DPS ou mesmo evento já registrado)."""

    def __init__(self, mensagem: str, existente: Any = None):
        self.existente = existente
        super().__init__(mensagem)

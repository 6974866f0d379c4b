# nfse/services/sefin/vault.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import base64
import binascii
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from django.conf import settings
from django.utils import timezone
import pytz

from cryptography import x509
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)
from cryptography.x509.oid import NameOID

from nfse.services.sefin.exceptions import ConfigError, CredentialError

logger = logging.getLogger("nfse.sefin")

# 32 bytes em hexadecimal
TAMANHO_CHAVE_HEX = 64
TAMANHO_NONCE = 12


@dataclass
class Credencial:
    """
    Certificado A1 pronto para assinar e para autenticar o canal TLS.
    """

    private_key: object
    certificate: x509.Certificate
    additional_certs: List[x509.Certificate] = field(default_factory=list)
    subject: str = ""
    issuer: str = ""
    titular: str = ""
    emissor: str = ""
    cnpj: Optional[str] = None
    valido_de: Optional[datetime] = None
    valido_ate: Optional[datetime] = None

    def private_key_pem(self) -> bytes:
        return self.private_key.private_bytes(
            Encoding.PEM,
            PrivateFormat.PKCS8,
            NoEncryption(),
        )

    def certificate_pem(self) -> bytes:
        """Certificado + cadeia adicional em PEM (ordem: folha primeiro)."""
        pem = self.certificate.public_bytes(Encoding.PEM)
        for extra in self.additional_certs:
            pem += extra.public_bytes(Encoding.PEM)
        return pem

    def certificate_base64(self) -> str:
        """DER em base64, como vai em KeyInfo/X509Data/X509Certificate."""
        return base64.b64encode(self.certificate.public_bytes(Encoding.DER)).decode("ascii")

    def dias_restantes(self, agora: Optional[datetime] = None) -> Optional[int]:
        if self.valido_ate is None:
            return None
        agora = agora or timezone.now()
        return (self.valido_ate - agora).days


def _nome_comum(name: x509.Name) -> str:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return attrs[0].value if attrs else "N/A"


def _cnpj_do_subject(name: x509.Name) -> Optional[str]:
    """
    e-CNPJ costuma trazer o CNPJ no serialNumber do subject
    (às vezes também depois de ':' no CN). Retorna os 14 primeiros dígitos.
    """
    for attr in name.get_attributes_for_oid(NameOID.SERIAL_NUMBER):
        digitos = re.sub(r"\D", "", str(attr.value))
        if len(digitos) >= 14:
            return digitos[:14]

    cn = _nome_comum(name)
    if ":" in cn:
        digitos = re.sub(r"\D", "", cn.rsplit(":", 1)[1])
        if len(digitos) == 14:
            return digitos
    return None


def _janela_validade(cert: x509.Certificate):
    try:
        return cert.not_valid_before_utc, cert.not_valid_after_utc
    except AttributeError:
        utc = pytz.UTC
        return utc.localize(cert.not_valid_before), utc.localize(cert.not_valid_after)


def carregar_credencial(bundle: bytes, senha: str) -> Credencial:
    """
    Abre o PKCS#12 (.pfx/.p12) e devolve a Credencial.

    Não verifica a validade: quem chama deve usar `validar_vigencia` antes de cada uso.
    """
    if not bundle:
        raise CredentialError("Certificado digital não enviado (conteúdo vazio).")
    if senha is None:
        raise CredentialError("Senha do certificado não informada.")

    try:
        private_key, cert, additional_certs = pkcs12.load_key_and_certificates(
            bytes(bundle),
            senha.encode("utf-8"),
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("Erro ao carregar PKCS12: %s", exc)
        raise CredentialError(
            f"Erro ao carregar o certificado PKCS#12 (senha incorreta ou arquivo inválido): {exc}"
        ) from exc

    if private_key is None or cert is None:
        raise CredentialError(
            "Não foi possível extrair chave privada/certificado do arquivo PKCS#12."
        )

    valido_de, valido_ate = _janela_validade(cert)

    credencial = Credencial(
        private_key=private_key,
        certificate=cert,
        additional_certs=list(additional_certs or []),
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        titular=_nome_comum(cert.subject),
        emissor=_nome_comum(cert.issuer),
        cnpj=_cnpj_do_subject(cert.subject),
        valido_de=valido_de,
        valido_ate=valido_ate,
    )

    logger.debug(
        "Certificado carregado: titular=%s emissor=%s validade=%s",
        credencial.titular,
        credencial.emissor,
        valido_ate,
    )
    return credencial


def validar_vigencia(credencial: Credencial, agora: Optional[datetime] = None) -> Credencial:
    agora = agora or timezone.now()
    if agora < credencial.valido_de or agora > credencial.valido_ate:
        logger.warning(
            "Certificado de %s fora da validade. Válido: %s até %s. Agora: %s",
            credencial.titular,
            credencial.valido_de,
            credencial.valido_ate,
            agora,
        )
        raise CredentialError(
            f"Certificado vencido ou ainda não válido. "
            f"Válido de {credencial.valido_de} até {credencial.valido_ate}"
        )
    return credencial


# ============================================================
# Criptografia da senha do certificado
# ============================================================


def _chave_simetrica() -> bytes:
    chave_hex = getattr(settings, "NFSE_ENCRYPTION_KEY", "") or ""
    if len(chave_hex) != TAMANHO_CHAVE_HEX:
        raise ConfigError(
            "NFSE_ENCRYPTION_KEY deve ter 64 caracteres (32 bytes em hexadecimal)."
        )
    try:
        return bytes.fromhex(chave_hex)
    except ValueError as exc:
        raise ConfigError("NFSE_ENCRYPTION_KEY não é hexadecimal válido.") from exc


def criptografar_senha(senha: str) -> str:
    """
    AES-256-GCM; retorna base64(nonce || ciphertext+tag).
    """
    aes = AESGCM(_chave_simetrica())
    nonce = os.urandom(TAMANHO_NONCE)
    cifrado = aes.encrypt(nonce, senha.encode("utf-8"), None)
    return base64.b64encode(nonce + cifrado).decode("ascii")


def descriptografar_senha(token: str) -> str:
    aes = AESGCM(_chave_simetrica())
    try:
        bruto = base64.b64decode(token or "", validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CredentialError("Senha criptografada com formato inválido.") from exc

    if len(bruto) <= TAMANHO_NONCE:
        raise CredentialError("Senha criptografada com formato inválido.")

    try:
        claro = aes.decrypt(bruto[:TAMANHO_NONCE], bruto[TAMANHO_NONCE:], None)
    except InvalidTag as exc:
        raise CredentialError(
            "Não foi possível descriptografar a senha do certificado (chave diferente ou dado adulterado)."
        ) from exc
    return claro.decode("utf-8")

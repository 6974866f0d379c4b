# nfse/services/sefin/signer.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from lxml import etree

from nfse.services.sefin.exceptions import SigningError, ValidationError
from nfse.services.sefin.validator import validar_dps
from nfse.services.sefin.vault import Credencial, validar_vigencia
from nfse.services.sefin.xml_dps_builder import build_dps_xml, gerar_id_dps
from nfse.services.sefin.xml_evento_builder import (
    build_evento_xml,
    gerar_id_evento,
    validar_evento,
)

logger = logging.getLogger("nfse.sefin")

DS_NS = "http://www.w3.org/2000/09/xmldsig#"

ALG_EXC_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"
ALG_ENVELOPED = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"
ALG_RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
ALG_SHA256 = "http://www.w3.org/2001/04/xmlenc#sha256"

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'


@dataclass
class DocumentoAssinado:
    id: str
    xml: str
    xml_assinado: str
    numero: Optional[int] = None
    serie: Optional[str] = None
    avisos: List[Dict[str, Any]] = field(default_factory=list)


def _canonicalize(element: etree._Element) -> bytes:
    """
    Canonicalização C14N EXCLUSIVA, sem comentários (padrão NFS-e Nacional).
    """
    return etree.tostring(
        element,
        method="c14n",
        exclusive=True,
        with_comments=False,
    )


def _parse(xml: str | bytes) -> etree._Element:
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    parser = etree.XMLParser(resolve_entities=False, no_network=True)
    try:
        return etree.fromstring(xml, parser=parser)
    except etree.XMLSyntaxError as exc:
        raise SigningError(f"XML malformado ao tentar assinar: {exc}") from exc


def _localizar_por_id(root: etree._Element, id_elemento: str) -> Optional[etree._Element]:
    encontrados = root.xpath("descendant-or-self::*[@Id=$id]", id=id_elemento)
    return encontrados[0] if encontrados else None


def _sem_assinaturas(element: etree._Element) -> etree._Element:
    """Transformação enveloped-signature: cópia do elemento sem ds:Signature internas."""
    copia = etree.fromstring(etree.tostring(element, with_tail=False))
    for sig in copia.xpath(".//ds:Signature", namespaces={"ds": DS_NS}):
        sig.getparent().remove(sig)
    return copia


def assinar_xml(
    xml: str | bytes,
    credencial: Credencial,
    id_elemento: str,
    tag_esperada: Optional[str] = None,
) -> str:
    """
    Assina o elemento com Id=`id_elemento` (XML-DSig envelopada).

    - SignatureMethod: RSA-SHA256
    - DigestMethod: SHA-256
    - Transforms: enveloped-signature + exc-c14n
    - <Signature> inserida logo após o elemento assinado.

    Retorna o XML assinado com a declaração UTF-8.
    """
    root = _parse(xml)

    # 1) O Id precisa existir no XML que nós mesmos geramos
    alvo = _localizar_por_id(root, id_elemento)
    if alvo is None:
        raise SigningError(f"Elemento com Id='{id_elemento}' não encontrado no XML a assinar.")
    if tag_esperada and etree.QName(alvo).localname != tag_esperada:
        raise SigningError(
            f"Id='{id_elemento}' aponta para <{etree.QName(alvo).localname}>, esperado <{tag_esperada}>."
        )
    if alvo.getparent() is None:
        raise SigningError("O elemento assinado não pode ser a raiz do documento.")

    if not isinstance(credencial.private_key, rsa.RSAPrivateKey):
        raise SigningError("Chave privada do certificado não é RSA.")

    try:
        # 2) Digest do elemento referenciado
        digest = hashlib.sha256(_canonicalize(_sem_assinaturas(alvo))).digest()

        # 3) <Signature> (namespace ds como default)
        signature = etree.Element(f"{{{DS_NS}}}Signature", nsmap={None: DS_NS})
        signed_info = etree.SubElement(signature, f"{{{DS_NS}}}SignedInfo")
        etree.SubElement(
            signed_info,
            f"{{{DS_NS}}}CanonicalizationMethod",
            Algorithm=ALG_EXC_C14N,
        )
        etree.SubElement(
            signed_info,
            f"{{{DS_NS}}}SignatureMethod",
            Algorithm=ALG_RSA_SHA256,
        )
        reference = etree.SubElement(
            signed_info,
            f"{{{DS_NS}}}Reference",
            URI=f"#{id_elemento}",
        )
        transforms = etree.SubElement(reference, f"{{{DS_NS}}}Transforms")
        etree.SubElement(transforms, f"{{{DS_NS}}}Transform", Algorithm=ALG_ENVELOPED)
        etree.SubElement(transforms, f"{{{DS_NS}}}Transform", Algorithm=ALG_EXC_C14N)
        etree.SubElement(reference, f"{{{DS_NS}}}DigestMethod", Algorithm=ALG_SHA256)
        digest_value = etree.SubElement(reference, f"{{{DS_NS}}}DigestValue")
        digest_value.text = base64.b64encode(digest).decode("ascii")

        signature_value = etree.SubElement(signature, f"{{{DS_NS}}}SignatureValue")

        key_info = etree.SubElement(signature, f"{{{DS_NS}}}KeyInfo")
        x509_data = etree.SubElement(key_info, f"{{{DS_NS}}}X509Data")
        x509_cert = etree.SubElement(x509_data, f"{{{DS_NS}}}X509Certificate")
        x509_cert.text = credencial.certificate_base64()

        # 4) Inserir logo após o elemento assinado e assinar o SignedInfo em contexto
        alvo.addnext(signature)

        valor = credencial.private_key.sign(
            _canonicalize(signed_info),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        signature_value.text = base64.b64encode(valor).decode("ascii")
    except SigningError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("Erro criptográfico ao assinar Id=%s: %s", id_elemento, exc)
        raise SigningError(f"Erro ao assinar o XML: {exc}") from exc

    logger.debug("XML assinado (Id=%s).", id_elemento)
    return XML_DECLARATION + etree.tostring(root, encoding="unicode")


def verificar_assinatura(xml_assinado: str | bytes) -> bool:
    """
    Confere o DigestValue da referência e a SignatureValue contra o
    certificado embutido em KeyInfo. Não valida a cadeia do certificado.
    """
    root = _parse(xml_assinado)
    ns = {"ds": DS_NS}

    signature = root.find(".//ds:Signature", ns)
    if signature is None:
        return False

    reference = signature.find("ds:SignedInfo/ds:Reference", ns)
    cert_b64 = signature.findtext("ds:KeyInfo/ds:X509Data/ds:X509Certificate", namespaces=ns)
    sig_b64 = signature.findtext("ds:SignatureValue", namespaces=ns)
    if reference is None or not cert_b64 or not sig_b64:
        return False

    alvo = _localizar_por_id(root, (reference.get("URI") or "").lstrip("#"))
    if alvo is None:
        return False

    digest = hashlib.sha256(_canonicalize(_sem_assinaturas(alvo))).digest()
    informado = (reference.findtext("ds:DigestValue", namespaces=ns) or "").strip()
    if base64.b64encode(digest).decode("ascii") != informado:
        logger.info("DigestValue não confere para %s.", reference.get("URI"))
        return False

    cert = x509.load_der_x509_certificate(base64.b64decode(cert_b64))
    try:
        cert.public_key().verify(
            base64.b64decode(sig_b64),
            _canonicalize(signature.find("ds:SignedInfo", ns)),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
    except InvalidSignature:
        return False
    return True


# ============================================================
# Documentos do domínio
# ============================================================


def assinar_dps(
    cnpj: str,
    dados: Dict[str, Any],
    credencial: Credencial,
    tipo_ambiente: str,
    numero: Optional[int] = None,
    agora: Optional[datetime] = None,
) -> DocumentoAssinado:
    """
    Valida, monta e assina a DPS.

    - Payload estruturado: o Id é gerado a partir de cLocEmi + CNPJ + série + número.
    - payload["xml"]: a DPS vem pronta; o Id é o do infDPS.

    Lança ValidationError com todos os erros quando a validação falha.
    """
    validar_vigencia(credencial, agora=agora)

    payload = dict(dados)
    if not payload.get("xml") and numero is not None:
        payload["numero"] = numero

    resultado = validar_dps(payload, cnpj_empresa=cnpj, agora=agora, tipo_ambiente=tipo_ambiente)
    avisos = [a.as_dict() for a in resultado.avisos]
    if not resultado.valido:
        raise ValidationError(
            [e.as_dict() for e in resultado.erros],
            avisos,
            mensagem="DPS inválida",
        )

    campos = resultado.campos
    if payload.get("xml"):
        xml = payload["xml"]
        id_dps = campos["id"]
        numero = int(campos["nDPS"])
        serie = str(campos["serie"])
    else:
        if numero is None:
            raise SigningError("Número da DPS não atribuído antes da assinatura.")
        numero = int(numero)
        serie = str(payload["serie"])
        id_dps = gerar_id_dps(campos["cLocEmi"], cnpj, serie, numero)
        xml = build_dps_xml(payload, id_dps, numero, tipo_ambiente)

    xml_assinado = assinar_xml(xml, credencial, id_dps, tag_esperada="infDPS")

    logger.info("DPS %s assinada (nDPS=%s, série=%s).", id_dps, numero, serie)
    return DocumentoAssinado(
        id=id_dps,
        xml=xml,
        xml_assinado=xml_assinado,
        numero=numero,
        serie=serie,
        avisos=avisos,
    )


def assinar_evento(
    cnpj: str,
    tipo_evento: str,
    chave_acesso: str,
    codigo_motivo,
    motivo: str,
    credencial: Credencial,
    tipo_ambiente: str,
    numero_sequencial: int = 1,
    chave_substituta: Optional[str] = None,
) -> DocumentoAssinado:
    """
    Valida, monta e assina o pedido de registro de evento (infPedReg).
    """
    validar_vigencia(credencial)

    erros = validar_evento(
        tipo_evento,
        chave_acesso,
        cnpj,
        codigo_motivo,
        motivo,
        chave_substituta=chave_substituta,
        numero_sequencial=numero_sequencial,
    )
    if erros:
        raise ValidationError([e.as_dict() for e in erros], mensagem="Evento inválido")

    id_evento = gerar_id_evento(chave_acesso, tipo_evento, numero_sequencial)
    xml = build_evento_xml(
        tipo_evento,
        chave_acesso,
        cnpj,
        int(codigo_motivo),
        motivo,
        tipo_ambiente,
        numero_sequencial=int(numero_sequencial),
        chave_substituta=chave_substituta,
    )
    xml_assinado = assinar_xml(xml, credencial, id_evento, tag_esperada="infPedReg")

    logger.info("Evento %s assinado.", id_evento)
    return DocumentoAssinado(
        id=id_evento,
        xml=xml,
        xml_assinado=xml_assinado,
        numero=int(numero_sequencial),
    )

# nfse/services/sefin/xml_extractor.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging

from lxml import etree

from nfse.services.sefin.exceptions import CodecError

logger = logging.getLogger("nfse.sefin")


def _parse(xml: str | bytes) -> etree._Element:
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    parser = etree.XMLParser(remove_blank_text=True, resolve_entities=False, no_network=True)
    try:
        return etree.fromstring(xml, parser=parser)
    except etree.XMLSyntaxError as exc:
        raise CodecError(f"XML malformado: {exc}") from exc


def remover_assinaturas(root: etree._Element) -> int:
    """
    Remove todos os elementos Signature (com ou sem namespace ds). Retorna quantos removeu.
    """
    assinaturas = root.xpath("//*[local-name()='Signature']")
    for sig in assinaturas:
        parent = sig.getparent()
        if parent is None:
            continue
        # preserva o tail para não colar o texto seguinte
        if sig.tail and sig.tail.strip():
            previous = sig.getprevious()
            if previous is not None:
                previous.tail = (previous.tail or "") + sig.tail
            else:
                parent.text = (parent.text or "") + sig.tail
        parent.remove(sig)
    return len(assinaturas)


def extrair_dps_limpa(xml_nfse: str | bytes) -> str:
    """
    Cópia "limpa" da NFS-e retornada pelo Sefin: sem assinaturas, sem
    declaração XML, começando no elemento raiz (<NFSe>) e indentada.
    """
    root = _parse(xml_nfse)
    removidas = remover_assinaturas(root)
    logger.debug("XML limpo gerado (%s assinatura(s) removida(s)).", removidas)
    return etree.tostring(root, encoding="unicode", pretty_print=True)

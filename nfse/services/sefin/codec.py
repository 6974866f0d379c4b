# nfse/services/sefin/codec.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import base64
import binascii
import gzip
import zlib

from nfse.services.sefin.exceptions import CodecError


def comprimir_e_codificar(xml: str | bytes) -> str:
    """
    GZip + Base64 do XML assinado (UTF-8), formato dos campos *XmlGZipB64 do Sefin.
    """
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    return base64.b64encode(gzip.compress(xml)).decode("ascii")


def decodificar_e_descomprimir(conteudo_b64: str | bytes) -> str:
    """
    Operação inversa: Base64 -> GZip -> texto UTF-8.
    Qualquer etapa malformada vira CodecError.
    """
    if not conteudo_b64:
        raise CodecError("Conteúdo Base64 vazio.")

    try:
        comprimido = base64.b64decode(conteudo_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CodecError(f"Base64 inválido: {exc}") from exc

    try:
        bruto = gzip.decompress(comprimido)
    except (OSError, EOFError, zlib.error) as exc:
        raise CodecError(f"Conteúdo GZip inválido ou truncado: {exc}") from exc

    try:
        return bruto.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CodecError(f"Conteúdo descomprimido não é UTF-8: {exc}") from exc

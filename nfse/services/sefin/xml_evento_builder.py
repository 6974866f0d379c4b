# nfse/services/sefin/xml_evento_builder.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from django.utils import timezone
from lxml import etree

from nfse.services.sefin.validator import ErroValidacao
from nfse.services.sefin.xml_dps_builder import (
    NFSE_NS,
    formatar_data_hora,
    versao_aplicacao,
)

logger = logging.getLogger("nfse.sefin")

EVENTO_VERSAO = "1.01"

TIPO_CANCELAMENTO = "101101"
TIPO_SUBSTITUICAO = "105102"

DESCRICOES = {
    TIPO_CANCELAMENTO: "Cancelamento de NFS-e",
    TIPO_SUBSTITUICAO: "Cancelamento de NFS-e por Substituição",
}

MOTIVO_MIN_CHARS = 15
MOTIVO_MAX_CHARS = 255


def gerar_id_evento(chave_acesso: str, tipo_evento: str, numero_sequencial: int = 1) -> str:
    """
    Id do pedido de registro: "PRE" + chNFSe(50) + tpEvento(6) + nPedRegEvento(3).
    """
    return f"PRE{chave_acesso}{tipo_evento}{int(numero_sequencial):03d}"


def chave_valida(chave: Optional[str]) -> bool:
    return bool(chave) and len(chave) == 50 and chave.isdigit()


def validar_evento(
    tipo_evento: str,
    chave_acesso: Optional[str],
    cnpj_autor: Optional[str],
    codigo_motivo,
    motivo: Optional[str],
    chave_substituta: Optional[str] = None,
    numero_sequencial=1,
) -> List[ErroValidacao]:
    """
    Regras do pedido de evento. Retorna a lista de erros (vazia se válido).
    """
    erros: List[ErroValidacao] = []

    if tipo_evento not in DESCRICOES:
        erros.append(ErroValidacao("E0300", f"Tipo de evento não suportado: {tipo_evento}", "tpEvento"))

    if not chave_valida(chave_acesso):
        erros.append(ErroValidacao("E0301", "Chave de acesso deve ter 50 dígitos numéricos", "chNFSe"))

    if not cnpj_autor or len(cnpj_autor) != 14 or not cnpj_autor.isdigit():
        erros.append(ErroValidacao("E0001", "CNPJ do autor deve ter 14 dígitos", "CNPJAutor"))

    try:
        codigo = int(codigo_motivo)
    except (TypeError, ValueError):
        codigo = None
    if codigo is None or not 1 <= codigo <= 9:
        erros.append(ErroValidacao("E0302", "Código do motivo deve ser entre 1 e 9", "cMotivo"))

    texto = (motivo or "").strip()
    if len(texto) < MOTIVO_MIN_CHARS:
        erros.append(
            ErroValidacao(
                "E0303",
                f"Motivo deve ter no mínimo {MOTIVO_MIN_CHARS} caracteres",
                "xMotivo",
            )
        )
    elif len(texto) > MOTIVO_MAX_CHARS:
        erros.append(
            ErroValidacao(
                "E0303",
                f"Motivo deve ter no máximo {MOTIVO_MAX_CHARS} caracteres",
                "xMotivo",
            )
        )

    try:
        seq = int(numero_sequencial)
    except (TypeError, ValueError):
        seq = 0
    if not 1 <= seq <= 999:
        erros.append(ErroValidacao("E0304", "Número sequencial do evento deve ser entre 1 e 999", "nPedRegEvento"))

    if tipo_evento == TIPO_SUBSTITUICAO:
        if not chave_valida(chave_substituta):
            erros.append(
                ErroValidacao("E0305", "Chave da NFS-e substituta deve ter 50 dígitos numéricos", "chSubstda")
            )
        elif chave_substituta == chave_acesso:
            erros.append(
                ErroValidacao("E0305", "NFS-e substituta deve ser diferente da substituída", "chSubstda")
            )

    return erros


def build_evento_xml(
    tipo_evento: str,
    chave_acesso: str,
    cnpj_autor: str,
    codigo_motivo: int,
    motivo: str,
    tipo_ambiente: str,
    numero_sequencial: int = 1,
    chave_substituta: Optional[str] = None,
    data_evento: Optional[datetime] = None,
) -> str:
    """
    Monta o pedRegEvento (versão 1.01) sem assinatura.
    """
    id_evento = gerar_id_evento(chave_acesso, tipo_evento, numero_sequencial)
    dh_evento = data_evento or timezone.now()

    def sub(parent, tag, text=None):
        el = etree.SubElement(parent, f"{{{NFSE_NS}}}{tag}")
        if text is not None:
            el.text = str(text)
        return el

    root = etree.Element(
        f"{{{NFSE_NS}}}pedRegEvento",
        nsmap={None: NFSE_NS},
        versao=EVENTO_VERSAO,
    )
    inf = sub(root, "infPedReg")
    inf.set("Id", id_evento)

    sub(inf, "tpAmb", tipo_ambiente)
    sub(inf, "verAplic", versao_aplicacao())
    sub(inf, "dhEvento", formatar_data_hora(dh_evento))
    sub(inf, "CNPJAutor", cnpj_autor)
    sub(inf, "chNFSe", chave_acesso)
    sub(inf, "nPedRegEvento", int(numero_sequencial))

    detalhe = sub(inf, f"e{tipo_evento}")
    sub(detalhe, "xDesc", DESCRICOES[tipo_evento])
    sub(detalhe, "cMotivo", int(codigo_motivo))
    sub(detalhe, "xMotivo", motivo.strip())
    if tipo_evento == TIPO_SUBSTITUICAO:
        sub(detalhe, "chSubstda", chave_substituta)

    xml = etree.tostring(root, encoding="unicode")
    logger.debug("XML do evento %s montado.", id_evento)
    return xml

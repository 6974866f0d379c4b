# nfse/services/sefin/xml_dps_builder.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from lxml import etree
import pytz

logger = logging.getLogger("nfse.sefin")

NFSE_NS = "http://www.sped.fazenda.gov.br/nfse"
DPS_VERSAO = "1.00"
VERSAO_APLICACAO_DEFAULT = "NFSeAPI_v1.0"

TZ_BRASILIA = pytz.timezone("America/Sao_Paulo")

# tpInsc usado no Id da DPS
TIPO_INSCRICAO_CPF = "1"
TIPO_INSCRICAO_CNPJ = "2"


def versao_aplicacao() -> str:
    return getattr(settings, "NFSE_VERSAO_APLICACAO", VERSAO_APLICACAO_DEFAULT)


def somente_digitos(valor: Any) -> str:
    """
    Remove pontuação usual de documentos (., /, -, espaços). Não remove letras,
    para que a validação acuse o valor inválido.
    """
    if valor is None:
        return ""
    return re.sub(r"[.\-/\s]", "", str(valor))


def _format_decimal(value: Decimal | float | int | str | None, casas: int = 2) -> str:
    """
    Formata valores monetários/percentuais com `casas` decimais. None vira 0.00.
    """
    if value is None or value == "":
        value = Decimal("0")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    quantum = Decimal(1).scaleb(-casas)
    return f"{value.quantize(quantum):.{casas}f}"


def parse_data_hora(valor: Any) -> Optional[datetime]:
    """
    Aceita datetime, date ou string ISO-8601. Datas sem fuso são tratadas
    como horário de Brasília. Retorna None se não for possível interpretar.
    """
    if valor is None or valor == "":
        return None
    if isinstance(valor, datetime):
        dt = valor
    elif isinstance(valor, date):
        dt = datetime(valor.year, valor.month, valor.day)
    else:
        texto = str(valor).strip()
        try:
            dt = parse_datetime(texto)
        except ValueError:
            return None
        if dt is None:
            try:
                d = parse_date(texto)
            except ValueError:
                return None
            if d is None:
                return None
            dt = datetime(d.year, d.month, d.day)

    if timezone.is_naive(dt):
        dt = TZ_BRASILIA.localize(dt)
    return dt


def formatar_data_hora(dt: datetime) -> str:
    """
    Formato exigido pelo Sefin: AAAA-MM-DDThh:mm:ss-03:00 (horário de Brasília).
    """
    return dt.astimezone(TZ_BRASILIA).replace(microsecond=0).isoformat()


def gerar_id_dps(
    codigo_municipio: str,
    inscricao: str,
    serie: str | int,
    numero: int | str,
) -> str:
    """
    Id da DPS (45 caracteres):

    "DPS" + cLocEmi(7) + tpInsc(1) + inscrição federal(14) + série(5) + nDPS(15)
    """
    inscricao = somente_digitos(inscricao)
    tipo_inscricao = TIPO_INSCRICAO_CPF if len(inscricao) == 11 else TIPO_INSCRICAO_CNPJ
    return (
        "DPS"
        f"{str(codigo_municipio).zfill(7)[:7]}"
        f"{tipo_inscricao}"
        f"{inscricao.zfill(14)}"
        f"{str(serie).zfill(5)[:5]}"
        f"{int(numero):015d}"
    )


def _sub(parent: etree._Element, tag: str, text: Any = None) -> etree._Element:
    el = etree.SubElement(parent, f"{{{NFSE_NS}}}{tag}")
    if text is not None:
        el.text = str(text)
    return el


def build_dps_xml(
    dados: Dict[str, Any],
    id_dps: str,
    numero: int,
    tipo_ambiente: str,
) -> str:
    """
    Monta o XML da DPS (sem assinatura) a partir do payload estruturado.

    O payload é o mesmo aceito por `validator.validar_dps`; a validação deve
    ter sido feita antes.
    """
    prestador = dados.get("prestador") or {}
    tomador = dados.get("tomador") or {}
    servico = dados.get("servico") or {}
    valores = dados.get("valores") or {}

    dh_emi = parse_data_hora(dados.get("data_emissao")) or timezone.now()
    competencia = parse_data_hora(dados.get("data_competencia")) or dh_emi
    codigo_municipio = str(dados.get("codigo_municipio") or "")

    root = etree.Element(
        f"{{{NFSE_NS}}}DPS",
        nsmap={None: NFSE_NS},
        versao=DPS_VERSAO,
    )
    inf = _sub(root, "infDPS")
    inf.set("Id", id_dps)

    _sub(inf, "tpAmb", tipo_ambiente)
    _sub(inf, "dhEmi", formatar_data_hora(dh_emi))
    _sub(inf, "verAplic", versao_aplicacao())
    _sub(inf, "serie", str(dados.get("serie")))
    _sub(inf, "nDPS", int(numero))
    _sub(inf, "dCompet", competencia.astimezone(TZ_BRASILIA).date().isoformat())
    _sub(inf, "tpEmit", "1")
    _sub(inf, "cLocEmi", codigo_municipio)

    # ----- Prestador -----
    prest = _sub(inf, "prest")
    _sub(prest, "CNPJ", somente_digitos(prestador.get("cnpj")))
    if prestador.get("inscricao_municipal"):
        _sub(prest, "IM", prestador["inscricao_municipal"])
    reg_trib = _sub(prest, "regTrib")
    _sub(reg_trib, "opSimpNac", prestador.get("opcao_simples_nacional", 1))
    _sub(reg_trib, "regEspTrib", prestador.get("regime_especial", 0))

    # ----- Tomador -----
    toma = _sub(inf, "toma")
    if tomador.get("cnpj"):
        _sub(toma, "CNPJ", somente_digitos(tomador["cnpj"]))
    elif tomador.get("cpf"):
        _sub(toma, "CPF", somente_digitos(tomador["cpf"]))
    _sub(toma, "xNome", tomador.get("nome", ""))
    if tomador.get("email"):
        _sub(toma, "email", tomador["email"])

    # ----- Serviço -----
    serv = _sub(inf, "serv")
    loc = _sub(serv, "locPrest")
    _sub(loc, "cLocPrestacao", servico.get("codigo_municipio_prestacao") or codigo_municipio)
    c_serv = _sub(serv, "cServ")
    _sub(c_serv, "cTribNac", servico.get("codigo_tributacao_nacional", ""))
    _sub(c_serv, "xDescServ", servico.get("descricao", ""))

    # ----- Valores -----
    vals = _sub(inf, "valores")
    v_serv_prest = _sub(vals, "vServPrest")
    _sub(v_serv_prest, "vServ", _format_decimal(valores.get("valor_servico")))
    trib = _sub(vals, "trib")
    trib_mun = _sub(trib, "tribMun")
    _sub(trib_mun, "tribISSQN", valores.get("tributacao_iss", 1))
    _sub(trib_mun, "vBC", _format_decimal(valores.get("base_calculo")))
    _sub(trib_mun, "pAliq", _format_decimal(valores.get("aliquota")))
    _sub(trib_mun, "vISSQN", _format_decimal(valores.get("valor_iss")))
    _sub(trib_mun, "tpRetISSQN", valores.get("retencao_iss", 1))
    tot_trib = _sub(trib, "totTrib")
    _sub(tot_trib, "indTotTrib", "0")
    if valores.get("valor_liquido") not in (None, ""):
        _sub(vals, "vLiq", _format_decimal(valores.get("valor_liquido")))

    xml = etree.tostring(root, encoding="unicode")
    logger.debug("XML da DPS %s montado (%s bytes).", id_dps, len(xml))
    return xml


# ============================================================
# Leitura de uma DPS já pronta (XML enviado pelo integrador)
# ============================================================


def _texto(el: Optional[etree._Element], caminho: str) -> Optional[str]:
    """
    Texto do primeiro filho em `caminho` (nomes locais separados por '/'),
    aceitando XML com ou sem namespace.
    """
    if el is None:
        return None
    expr = "." + "".join(f"/*[local-name()='{nome}']" for nome in caminho.split("/"))
    encontrados = el.xpath(expr)
    if encontrados and encontrados[0].text is not None:
        return encontrados[0].text.strip()
    return None


def _texto_descendente(el: etree._Element, *nomes: str) -> Optional[str]:
    """Primeiro descendente com algum dos nomes locais, na ordem dada."""
    for nome in nomes:
        encontrados = el.xpath(f".//*[local-name()='{nome}']")
        if encontrados and encontrados[0].text is not None:
            return encontrados[0].text.strip()
    return None


def extrair_campos_dps(xml: str | bytes) -> Dict[str, Any]:
    """
    Extrai de uma DPS em XML os campos usados pela validação.
    Lança etree.XMLSyntaxError se o XML não for bem formado e ValueError
    se não houver infDPS.
    """
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    parser = etree.XMLParser(resolve_entities=False, no_network=True)
    root = etree.fromstring(xml, parser=parser)

    encontrados = root.xpath("descendant-or-self::*[local-name()='infDPS']")
    if not encontrados:
        raise ValueError("Elemento infDPS não encontrado no XML.")
    inf = encontrados[0]

    return {
        "origem": "xml",
        "id": inf.get("Id"),
        "tpAmb": _texto(inf, "tpAmb"),
        "dhEmi": _texto(inf, "dhEmi"),
        "verAplic": _texto(inf, "verAplic"),
        "nDPS": _texto(inf, "nDPS"),
        "serie": _texto(inf, "serie"),
        "cLocEmi": _texto(inf, "cLocEmi") or _texto(inf, "prest/cMun"),
        "cnpj_prestador": _texto(inf, "prest/CNPJ"),
        "cnpj_tomador": _texto(inf, "toma/CNPJ"),
        "cpf_tomador": _texto(inf, "toma/CPF"),
        "nome_tomador": _texto(inf, "toma/xNome"),
        "valores": {
            "vServ": _texto_descendente(inf, "vServ", "vServPrestado"),
            "vBC": _texto_descendente(inf, "vBC", "vBCISS"),
            "pAliq": _texto_descendente(inf, "pAliq", "pISS"),
            "vISS": _texto_descendente(inf, "vISSQN", "vISS"),
            "vLiq": _texto_descendente(inf, "vLiq"),
        },
    }


def to_decimal(valor: Any) -> Optional[Decimal]:
    if valor is None or valor == "":
        return None
    try:
        return Decimal(str(valor).strip())
    except (InvalidOperation, ValueError):
        return None

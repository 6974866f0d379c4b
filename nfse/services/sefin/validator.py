# nfse/services/sefin/validator.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional

from django.conf import settings
from django.utils import timezone
from lxml import etree

from nfse.services.sefin.xml_dps_builder import (
    extrair_campos_dps,
    parse_data_hora,
    somente_digitos,
    to_decimal,
    versao_aplicacao,
)

logger = logging.getLogger("nfse.sefin")

TOLERANCIA_ISS = Decimal("0.01")


class ErroValidacao(NamedTuple):
    codigo: str
    mensagem: str
    campo: str

    def as_dict(self) -> Dict[str, str]:
        return self._asdict()


@dataclass
class ResultadoValidacao:
    erros: List[ErroValidacao] = field(default_factory=list)
    avisos: List[ErroValidacao] = field(default_factory=list)
    campos: Dict[str, Any] = field(default_factory=dict)

    @property
    def valido(self) -> bool:
        return not self.erros

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sucesso": self.valido,
            "erros": [e.as_dict() for e in self.erros],
            "avisos": [a.as_dict() for a in self.avisos],
        }


# ============================================================
# Regras individuais (cada uma retorna None ou um ErroValidacao)
# ============================================================


def _digito_repetido(valor: str) -> bool:
    return len(set(valor)) == 1


def validar_cnpj(cnpj: Optional[str], campo: str) -> Optional[ErroValidacao]:
    if not cnpj or len(cnpj) != 14 or not cnpj.isdigit():
        return ErroValidacao("E0001", "CNPJ deve conter 14 dígitos numéricos", campo)
    if _digito_repetido(cnpj):
        return ErroValidacao("E0001", "CNPJ inválido (dígitos repetidos)", campo)
    return None


def validar_cpf(cpf: Optional[str], campo: str) -> Optional[ErroValidacao]:
    if not cpf or len(cpf) != 11 or not cpf.isdigit():
        return ErroValidacao("E0003", "CPF deve conter 11 dígitos numéricos", campo)
    if _digito_repetido(cpf):
        return ErroValidacao("E0003", "CPF inválido (dígitos repetidos)", campo)
    return None


def validar_municipio(codigo: Optional[str], campo: str) -> Optional[ErroValidacao]:
    if not codigo or len(codigo) != 7 or not codigo.isdigit():
        return ErroValidacao(
            "E0010", "Código de município deve ter 7 dígitos (código IBGE)", campo
        )
    return None


def validar_data_emissao(
    valor: Any,
    campo: str,
    agora: Optional[datetime] = None,
):
    """
    Retorna (erro, aviso). Data futura é erro; data antiga é só aviso.
    """
    agora = agora or timezone.now()
    dt = parse_data_hora(valor)
    if dt is None:
        return ErroValidacao("E0015", "Data/hora de emissão inválida", campo), None

    if dt > agora:
        return ErroValidacao("E0015", "Data/hora de emissão não pode ser futura", campo), None

    dias_limite = getattr(settings, "NFSE_DIAS_EMISSAO_ANTIGA", 30)
    if agora - dt > timedelta(days=dias_limite):
        return None, ErroValidacao(
            "E0015",
            f"Data de emissão com mais de {dias_limite} dias",
            campo,
        )
    return None, None


def validar_decimal(
    valor: Any,
    campo: str,
    minimo: Optional[Decimal] = None,
    maximo: Optional[Decimal] = None,
) -> Optional[ErroValidacao]:
    if valor is None or valor == "":
        return None
    numero = to_decimal(valor)
    if numero is None or not numero.is_finite():
        return ErroValidacao("E0020", f"Valor inválido: {valor}", campo)
    if numero < 0:
        return ErroValidacao("E0020", "Valor não pode ser negativo", campo)
    if minimo is not None and numero < minimo:
        return ErroValidacao("E0020", f"Valor deve ser maior ou igual a {minimo}", campo)
    if maximo is not None and numero > maximo:
        return ErroValidacao("E0020", f"Valor deve ser menor ou igual a {maximo}", campo)
    return None


# ============================================================
# Normalização do payload
# ============================================================


def campos_do_payload(payload: Dict[str, Any], tipo_ambiente: Optional[str] = None) -> Dict[str, Any]:
    """
    Converte o payload estruturado nos mesmos campos extraídos de uma DPS em XML.
    """
    prestador = payload.get("prestador") or {}
    tomador = payload.get("tomador") or {}
    valores = payload.get("valores") or {}

    return {
        "origem": "payload",
        "id": None,
        "tpAmb": tipo_ambiente or "2",
        "dhEmi": payload.get("data_emissao") or timezone.now(),
        "verAplic": versao_aplicacao(),
        "nDPS": payload.get("numero"),
        "serie": payload.get("serie"),
        "cLocEmi": str(payload.get("codigo_municipio") or ""),
        "cnpj_prestador": somente_digitos(prestador.get("cnpj")) or None,
        "cnpj_tomador": somente_digitos(tomador.get("cnpj")) or None,
        "cpf_tomador": somente_digitos(tomador.get("cpf")) or None,
        "nome_tomador": tomador.get("nome"),
        "valores": {
            "vServ": valores.get("valor_servico"),
            "vBC": valores.get("base_calculo"),
            "pAliq": valores.get("aliquota"),
            "vISS": valores.get("valor_iss"),
            "vLiq": valores.get("valor_liquido"),
        },
    }


def _validar_estrutura(campos: Dict[str, Any]) -> List[ErroValidacao]:
    erros: List[ErroValidacao] = []
    vindo_de_xml = campos.get("origem") == "xml"

    if vindo_de_xml and not campos.get("id"):
        erros.append(ErroValidacao("E0100", "Atributo Id do elemento infDPS é obrigatório", "infDPS.Id"))

    if campos.get("tpAmb") not in ("1", "2"):
        erros.append(
            ErroValidacao("E0102", "tpAmb deve ser 1 (Produção) ou 2 (Homologação)", "infDPS.tpAmb")
        )
    if not campos.get("dhEmi"):
        erros.append(ErroValidacao("E0103", "Data/hora de emissão (dhEmi) é obrigatória", "infDPS.dhEmi"))
    if not campos.get("verAplic"):
        erros.append(ErroValidacao("E0104", "Versão da aplicação (verAplic) é obrigatória", "infDPS.verAplic"))

    numero = campos.get("nDPS")
    if numero in (None, ""):
        if vindo_de_xml:
            erros.append(ErroValidacao("E0105", "Número da DPS (nDPS) é obrigatório", "infDPS.nDPS"))
    else:
        try:
            valido = int(str(numero)) >= 1
        except ValueError:
            valido = False
        if not valido:
            erros.append(ErroValidacao("E0105", "Número da DPS deve ser inteiro positivo", "infDPS.nDPS"))

    serie = campos.get("serie")
    if serie in (None, "") or len(str(serie)) > 5:
        erros.append(ErroValidacao("E0106", "Série da DPS é obrigatória (até 5 caracteres)", "infDPS.serie"))
    if not campos.get("cnpj_prestador"):
        erros.append(ErroValidacao("E0107", "CNPJ do prestador é obrigatório", "infDPS.prest.CNPJ"))
    if not campos.get("cnpj_tomador") and not campos.get("cpf_tomador"):
        erros.append(ErroValidacao("E0108", "CNPJ ou CPF do tomador é obrigatório", "infDPS.toma"))
    if not campos.get("nome_tomador"):
        erros.append(ErroValidacao("E0109", "Nome do tomador é obrigatório", "infDPS.toma.xNome"))

    return erros


def _validar_regras(
    campos: Dict[str, Any],
    cnpj_empresa: Optional[str],
    agora: Optional[datetime],
):
    erros: List[ErroValidacao] = []
    avisos: List[ErroValidacao] = []

    cnpj_prest = campos.get("cnpj_prestador")
    cnpj_toma = campos.get("cnpj_tomador")
    cpf_toma = campos.get("cpf_tomador")

    # E0202: prestador não pode ser o próprio tomador
    if cnpj_prest and cnpj_prest in (cnpj_toma, cpf_toma):
        erros.append(
            ErroValidacao("E0202", "Prestador não pode ser igual ao tomador", "infDPS.toma.CNPJ")
        )

    if cnpj_empresa and cnpj_prest and cnpj_prest != cnpj_empresa:
        erros.append(
            ErroValidacao(
                "E0204",
                f"CNPJ do prestador ({cnpj_prest}) difere do CNPJ da empresa autenticada ({cnpj_empresa})",
                "infDPS.prest.CNPJ",
            )
        )

    for erro in (
        validar_cnpj(cnpj_prest, "infDPS.prest.CNPJ") if cnpj_prest else None,
        validar_cnpj(cnpj_toma, "infDPS.toma.CNPJ") if cnpj_toma else None,
        validar_cpf(cpf_toma, "infDPS.toma.CPF") if cpf_toma else None,
        validar_municipio(campos.get("cLocEmi"), "infDPS.cLocEmi"),
    ):
        if erro:
            erros.append(erro)

    if campos.get("dhEmi"):
        erro, aviso = validar_data_emissao(campos["dhEmi"], "infDPS.dhEmi", agora=agora)
        if erro:
            erros.append(erro)
        if aviso:
            avisos.append(aviso)

    valores = campos.get("valores") or {}
    for chave, campo, limites in (
        ("vServ", "infDPS.valores.vServ", {}),
        ("vBC", "infDPS.valores.vBC", {}),
        ("pAliq", "infDPS.valores.pAliq", {"minimo": Decimal("0"), "maximo": Decimal("100")}),
        ("vISS", "infDPS.valores.vISSQN", {}),
        ("vLiq", "infDPS.valores.vLiq", {}),
    ):
        erro = validar_decimal(valores.get(chave), campo, **limites)
        if erro:
            erros.append(erro)

    # E0200: ISS declarado x calculado
    base = to_decimal(valores.get("vBC"))
    aliquota = to_decimal(valores.get("pAliq"))
    iss = to_decimal(valores.get("vISS"))
    if None not in (base, aliquota, iss) and all(v.is_finite() for v in (base, aliquota, iss)):
        calculado = base * aliquota / Decimal("100")
        if abs(calculado - iss) > TOLERANCIA_ISS:
            erros.append(
                ErroValidacao(
                    "E0200",
                    f"Valor do ISS incorreto. Esperado: {calculado:.2f}, Informado: {iss:.2f}",
                    "infDPS.valores.vISSQN",
                )
            )

    return erros, avisos


def validar_dps(
    payload: Dict[str, Any],
    cnpj_empresa: Optional[str] = None,
    agora: Optional[datetime] = None,
    tipo_ambiente: Optional[str] = None,
) -> ResultadoValidacao:
    """
    Valida a DPS antes de assinar, acumulando todos os problemas.

    - payload["xml"]: DPS já montada pelo integrador (o Id vem no XML).
    - caso contrário: payload estruturado (o Id é gerado depois).

    cnpj_empresa, se informado, deve ser igual ao CNPJ do prestador.
    """
    resultado = ResultadoValidacao()

    if payload.get("xml"):
        try:
            campos = extrair_campos_dps(payload["xml"])
        except etree.XMLSyntaxError as exc:
            resultado.erros.append(ErroValidacao("E9999", f"XML malformado: {exc}", "xml"))
            return resultado
        except ValueError as exc:
            resultado.erros.append(ErroValidacao("E9998", str(exc), "xml"))
            return resultado
    else:
        campos = campos_do_payload(payload, tipo_ambiente=tipo_ambiente)

    resultado.campos = campos
    resultado.erros.extend(_validar_estrutura(campos))
    erros, avisos = _validar_regras(campos, cnpj_empresa, agora)
    resultado.erros.extend(erros)
    resultado.avisos.extend(avisos)

    if resultado.erros:
        logger.info(
            "Validação da DPS falhou com %s erro(s): %s",
            len(resultado.erros),
            [e.codigo for e in resultado.erros],
        )
    return resultado

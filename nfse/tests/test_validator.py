# nfse/tests/test_validator.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import datetime

from django.test import SimpleTestCase, override_settings
from django.utils import timezone

from nfse.services.sefin.validator import validar_dps
from nfse.services.sefin.xml_evento_builder import (
    TIPO_CANCELAMENTO,
    TIPO_SUBSTITUICAO,
    validar_evento,
)
from nfse.tests.factories import (
    CHAVE_NFSE,
    CHAVE_NFSE_2,
    CNPJ_PRESTADOR,
    CNPJ_TOMADOR,
    payload_dps,
)


def _codigos(resultado):
    return [e.codigo for e in resultado.erros]


class ValidarDpsTests(SimpleTestCase):
    """
    Validação prévia da DPS (antes de assinar).
    """

    def test_payload_valido(self):
        resultado = validar_dps(payload_dps(numero=1), cnpj_empresa=CNPJ_PRESTADOR)
        self.assertTrue(resultado.valido, resultado.erros)
        self.assertEqual(resultado.as_dict()["sucesso"], True)

    def test_prestador_igual_ao_tomador(self):
        payload = payload_dps(
            tomador={"cnpj": CNPJ_PRESTADOR, "nome": "Eu mesmo"},
        )
        resultado = validar_dps(payload)
        self.assertIn("E0202", _codigos(resultado))

    def test_cnpj_com_pontuacao_e_normalizado(self):
        payload = payload_dps(prestador={"cnpj": "12.345.678/0001-95"})
        self.assertTrue(validar_dps(payload, cnpj_empresa=CNPJ_PRESTADOR).valido)

    def test_cnpj_invalido(self):
        payload = payload_dps(tomador={"cnpj": "1111111111111", "nome": "X"})
        resultado = validar_dps(payload)
        self.assertIn("E0001", _codigos(resultado))

    def test_cnpj_com_digitos_repetidos(self):
        payload = payload_dps(tomador={"cnpj": "1" * 14, "nome": "X"})
        self.assertIn("E0001", _codigos(validar_dps(payload)))

    def test_cpf_do_tomador(self):
        ok = payload_dps(tomador={"cpf": "123.456.789-09", "nome": "Fulano"})
        ruim = payload_dps(tomador={"cpf": "1234567890", "nome": "Fulano"})
        self.assertTrue(validar_dps(ok).valido)
        self.assertIn("E0003", _codigos(validar_dps(ruim)))

    def test_municipio_com_seis_digitos(self):
        resultado = validar_dps(payload_dps(codigo_municipio="355030"))
        self.assertIn("E0010", _codigos(resultado))

    def test_prestador_diferente_da_empresa(self):
        resultado = validar_dps(payload_dps(), cnpj_empresa="11222333000181")
        self.assertIn("E0204", _codigos(resultado))

    def test_acumula_todos_os_erros(self):
        payload = payload_dps(
            serie="",
            codigo_municipio="1",
            tomador={"cnpj": CNPJ_TOMADOR},
        )
        codigos = _codigos(validar_dps(payload))
        self.assertIn("E0106", codigos)
        self.assertIn("E0010", codigos)
        self.assertIn("E0109", codigos)

    def test_numero_nao_inteiro(self):
        self.assertIn("E0105", _codigos(validar_dps(payload_dps(numero="abc"))))
        self.assertIn("E0105", _codigos(validar_dps(payload_dps(numero=0))))

    # -------------------------
    # ISS
    # -------------------------

    def test_iss_dentro_da_tolerancia(self):
        payload = payload_dps()
        payload["valores"] = dict(payload["valores"], valor_iss="50.01")
        self.assertTrue(validar_dps(payload).valido)

    def test_iss_fora_da_tolerancia(self):
        payload = payload_dps()
        payload["valores"] = dict(payload["valores"], valor_iss="50.02")
        resultado = validar_dps(payload)
        self.assertEqual(_codigos(resultado), ["E0200"])
        self.assertIn("Esperado: 50.00", resultado.erros[0].mensagem)

    def test_aliquota_acima_de_cem(self):
        payload = payload_dps()
        payload["valores"] = dict(payload["valores"], aliquota="101")
        self.assertIn("E0020", _codigos(validar_dps(payload)))

    def test_valor_negativo(self):
        payload = payload_dps()
        payload["valores"] = dict(payload["valores"], valor_servico="-1")
        self.assertIn("E0020", _codigos(validar_dps(payload)))

    # -------------------------
    # Data de emissão
    # -------------------------

    def test_data_futura(self):
        payload = payload_dps(data_emissao=timezone.now() + datetime.timedelta(days=1))
        self.assertIn("E0015", _codigos(validar_dps(payload)))

    @override_settings(NFSE_DIAS_EMISSAO_ANTIGA=30)
    def test_data_antiga_e_so_aviso(self):
        payload = payload_dps(data_emissao=timezone.now() - datetime.timedelta(days=45))
        resultado = validar_dps(payload)

        self.assertTrue(resultado.valido)
        self.assertEqual([a.codigo for a in resultado.avisos], ["E0015"])
        self.assertEqual(len(resultado.as_dict()["avisos"]), 1)

    def test_data_sem_fuso_e_horario_de_brasilia(self):
        agora = timezone.make_aware(datetime.datetime(2026, 3, 10, 12, 0), datetime.timezone.utc)
        # 09:30 em Brasília = 12:30 UTC, portanto no futuro
        payload = payload_dps(data_emissao="2026-03-10T09:30:00")
        self.assertIn("E0015", _codigos(validar_dps(payload, agora=agora)))

        payload = payload_dps(data_emissao="2026-03-10T08:30:00")
        self.assertTrue(validar_dps(payload, agora=agora).valido)

    # -------------------------
    # DPS já em XML
    # -------------------------

    def test_xml_malformado(self):
        resultado = validar_dps({"xml": "<DPS><infDPS>"})
        self.assertEqual(_codigos(resultado), ["E9999"])

    def test_xml_sem_infdps(self):
        resultado = validar_dps({"xml": "<DPS/>"})
        self.assertEqual(_codigos(resultado), ["E9998"])

    def test_xml_sem_id_e_sem_numero(self):
        xml = (
            '<DPS xmlns="http://www.sped.fazenda.gov.br/nfse"><infDPS>'
            "<tpAmb>2</tpAmb><dhEmi>2020-01-01T10:00:00-03:00</dhEmi>"
            "<verAplic>X</verAplic><serie>1</serie><cLocEmi>3550308</cLocEmi>"
            f"<prest><CNPJ>{CNPJ_PRESTADOR}</CNPJ></prest>"
            f"<toma><CNPJ>{CNPJ_TOMADOR}</CNPJ><xNome>Cliente</xNome></toma>"
            "</infDPS></DPS>"
        )
        codigos = _codigos(validar_dps({"xml": xml}))
        self.assertIn("E0100", codigos)
        self.assertIn("E0105", codigos)


class ValidarEventoTests(SimpleTestCase):
    def _validar(self, **extra):
        dados = {
            "tipo_evento": TIPO_CANCELAMENTO,
            "chave_acesso": CHAVE_NFSE,
            "cnpj_autor": CNPJ_PRESTADOR,
            "codigo_motivo": 1,
            "motivo": "Erro na emissão",
        }
        dados.update(extra)
        return [e.codigo for e in validar_evento(**dados)]

    def test_motivo_com_quinze_caracteres_passa(self):
        self.assertEqual(len("Erro na emissão"), 15)
        self.assertEqual(self._validar(), [])

    def test_motivo_com_quatorze_caracteres_falha(self):
        self.assertEqual(self._validar(motivo="Erro na emissa"), ["E0303"])

    def test_chave_com_tamanho_errado(self):
        self.assertIn("E0301", self._validar(chave_acesso=CHAVE_NFSE[:-1]))

    def test_codigo_motivo_fora_da_faixa(self):
        self.assertIn("E0302", self._validar(codigo_motivo=10))
        self.assertIn("E0302", self._validar(codigo_motivo="x"))

    def test_sequencia_fora_da_faixa(self):
        self.assertIn("E0304", self._validar(numero_sequencial=1000))

    def test_tipo_desconhecido(self):
        self.assertIn("E0300", self._validar(tipo_evento="999999"))

    def test_substituicao_exige_chave_substituta_diferente(self):
        self.assertIn("E0305", self._validar(tipo_evento=TIPO_SUBSTITUICAO))
        self.assertIn(
            "E0305",
            self._validar(tipo_evento=TIPO_SUBSTITUICAO, chave_substituta=CHAVE_NFSE),
        )
        self.assertEqual(
            self._validar(tipo_evento=TIPO_SUBSTITUICAO, chave_substituta=CHAVE_NFSE_2),
            [],
        )

# nfse/tests/test_signer.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from django.test import SimpleTestCase

from lxml import etree

from nfse.services.sefin.exceptions import CredentialError, SigningError, ValidationError
from nfse.services.sefin.signer import (
    DS_NS,
    assinar_dps,
    assinar_evento,
    assinar_xml,
    verificar_assinatura,
)
from nfse.services.sefin.vault import carregar_credencial
from nfse.services.sefin.xml_dps_builder import NFSE_NS
from nfse.services.sefin.xml_evento_builder import TIPO_CANCELAMENTO, TIPO_SUBSTITUICAO
from nfse.tests.factories import (
    CHAVE_NFSE,
    CHAVE_NFSE_2,
    CNPJ_PRESTADOR,
    MUNICIPIO,
    SENHA_PFX,
    gerar_pfx,
    payload_dps,
)

NS = {"n": NFSE_NS, "ds": DS_NS}


def _c14n(element) -> bytes:
    return etree.tostring(element, method="c14n", exclusive=True, with_comments=False)


class AssinarDpsTests(SimpleTestCase):
    """
    Assinatura XML-DSig envelopada da DPS (RSA-SHA256, exc-c14n).
    """

    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        cls.credencial = carregar_credencial(gerar_pfx(), SENHA_PFX)

    def _assinar(self, numero=31, **extra):
        return assinar_dps(
            CNPJ_PRESTADOR,
            payload_dps(**extra),
            self.credencial,
            "2",
            numero=numero,
        )

    def test_id_da_dps(self):
        documento = self._assinar()

        self.assertEqual(len(documento.id), 45)
        self.assertEqual(
            documento.id,
            f"DPS{MUNICIPIO}2{CNPJ_PRESTADOR}00001{31:015d}",
        )
        self.assertEqual(documento.numero, 31)
        self.assertEqual(documento.serie, "1")

    def test_assinatura_confere(self):
        documento = self._assinar()
        self.assertTrue(documento.xml_assinado.startswith('<?xml version="1.0" encoding="UTF-8"?>'))
        self.assertTrue(verificar_assinatura(documento.xml_assinado))

    def test_signature_logo_apos_infdps(self):
        root = etree.fromstring(self._assinar().xml_assinado.encode("utf-8"))

        filhos = list(root)
        self.assertEqual(etree.QName(filhos[0]).localname, "infDPS")
        self.assertEqual(filhos[1].tag, f"{{{DS_NS}}}Signature")
        self.assertEqual(
            filhos[1].find("ds:SignedInfo/ds:Reference", NS).get("URI"),
            "#" + filhos[0].get("Id"),
        )
        self.assertIsNotNone(filhos[1].find("ds:KeyInfo/ds:X509Data/ds:X509Certificate", NS))

    def test_infdps_assinado_identico_ao_original(self):
        documento = self._assinar()
        original = etree.fromstring(documento.xml.encode("utf-8")).find("n:infDPS", NS)
        assinado = etree.fromstring(documento.xml_assinado.encode("utf-8")).find("n:infDPS", NS)
        self.assertEqual(_c14n(original), _c14n(assinado))

    def test_conteudo_adulterado_nao_confere(self):
        xml = self._assinar().xml_assinado.replace("1000.00", "9000.00")
        self.assertFalse(verificar_assinatura(xml))

    def test_valores_da_dps(self):
        root = etree.fromstring(self._assinar().xml_assinado.encode("utf-8"))
        inf = root.find("n:infDPS", NS)

        self.assertEqual(inf.findtext("n:tpAmb", namespaces=NS), "2")
        self.assertEqual(inf.findtext("n:nDPS", namespaces=NS), "31")
        self.assertEqual(inf.findtext("n:prest/n:CNPJ", namespaces=NS), CNPJ_PRESTADOR)
        self.assertEqual(inf.findtext("n:valores/n:trib/n:tribMun/n:vISSQN", namespaces=NS), "50.00")
        self.assertTrue(inf.findtext("n:dhEmi", namespaces=NS).endswith("-03:00"))

    def test_validacao_falha_antes_de_assinar(self):
        with self.assertRaises(ValidationError) as ctx:
            self._assinar(tomador={"cnpj": CNPJ_PRESTADOR, "nome": "Eu"})
        self.assertIn("E0202", [e["codigo"] for e in ctx.exception.erros])

    def test_numero_invalido_vira_erro_de_validacao(self):
        with self.assertRaises(ValidationError) as ctx:
            self._assinar(numero="abc")
        self.assertEqual([e["codigo"] for e in ctx.exception.erros], ["E0105"])

    def test_certificado_vencido(self):
        vencido = carregar_credencial(gerar_pfx(dias_inicio=-400, dias_fim=-1), SENHA_PFX)
        with self.assertRaises(CredentialError):
            assinar_dps(CNPJ_PRESTADOR, payload_dps(), vencido, "2", numero=1)

    def test_dps_em_xml_usa_id_do_proprio_xml(self):
        documento = self._assinar(numero=7)
        reassinado = assinar_dps(CNPJ_PRESTADOR, {"xml": documento.xml}, self.credencial, "2")

        self.assertEqual(reassinado.id, documento.id)
        self.assertEqual(reassinado.numero, 7)
        self.assertTrue(verificar_assinatura(reassinado.xml_assinado))


class AssinarXmlTests(SimpleTestCase):
    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        cls.credencial = carregar_credencial(gerar_pfx(), SENHA_PFX)

    def test_id_inexistente(self):
        with self.assertRaises(SigningError):
            assinar_xml('<r><a Id="X1"/></r>', self.credencial, "X2")

    def test_tag_inesperada(self):
        with self.assertRaises(SigningError):
            assinar_xml('<r><a Id="X1"/></r>', self.credencial, "X1", tag_esperada="infDPS")

    def test_raiz_nao_pode_ser_assinada(self):
        with self.assertRaises(SigningError):
            assinar_xml('<a Id="X1"/>', self.credencial, "X1")


class AssinarEventoTests(SimpleTestCase):
    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        cls.credencial = carregar_credencial(gerar_pfx(), SENHA_PFX)

    def test_cancelamento(self):
        documento = assinar_evento(
            CNPJ_PRESTADOR,
            TIPO_CANCELAMENTO,
            CHAVE_NFSE,
            1,
            "Erro na emissão da nota",
            self.credencial,
            "2",
        )
        self.assertEqual(documento.id, f"PRE{CHAVE_NFSE}{TIPO_CANCELAMENTO}001")
        self.assertTrue(verificar_assinatura(documento.xml_assinado))

        inf = etree.fromstring(documento.xml_assinado.encode("utf-8")).find("n:infPedReg", NS)
        self.assertEqual(inf.findtext("n:chNFSe", namespaces=NS), CHAVE_NFSE)
        self.assertEqual(inf.findtext(f"n:e{TIPO_CANCELAMENTO}/n:cMotivo", namespaces=NS), "1")

    def test_substituicao_leva_chave_substituta(self):
        documento = assinar_evento(
            CNPJ_PRESTADOR,
            TIPO_SUBSTITUICAO,
            CHAVE_NFSE,
            2,
            "Substituição por valor incorreto",
            self.credencial,
            "2",
            numero_sequencial=2,
            chave_substituta=CHAVE_NFSE_2,
        )
        self.assertTrue(documento.id.endswith(f"{TIPO_SUBSTITUICAO}002"))
        self.assertIn(f"<chSubstda>{CHAVE_NFSE_2}</chSubstda>", documento.xml)

    def test_motivo_curto(self):
        with self.assertRaises(ValidationError) as ctx:
            assinar_evento(CNPJ_PRESTADOR, TIPO_CANCELAMENTO, CHAVE_NFSE, 1, "curto", self.credencial, "2")
        self.assertEqual([e["codigo"] for e in ctx.exception.erros], ["E0303"])

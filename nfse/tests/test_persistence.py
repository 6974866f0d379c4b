# nfse/tests/test_persistence.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from django.db import IntegrityError
from django.test import TestCase, override_settings

from nfse.models import EventoNFSe, Transmissao
from nfse.services.sefin import persistence
from nfse.services.sefin.exceptions import Conflict
from nfse.tests.factories import (
    CHAVE_NFSE,
    CHAVE_NFSE_2,
    CHAVE_TESTE,
    criar_empresa,
    criar_transmissao,
)


@override_settings(NFSE_ENCRYPTION_KEY=CHAVE_TESTE)
class TransmissaoPersistenciaTests(TestCase):
    def setUp(self) -> None:
        self.empresa = criar_empresa()

    def test_salvar_resultado_e_idempotente(self):
        transmissao = criar_transmissao(self.empresa)
        campos = {
            "chave_acesso": CHAVE_NFSE,
            "situacao_nfse": Transmissao.Situacao.AUTORIZADA,
            "numero_nfse": "10",
            "erros": [],
        }

        persistence.salvar_resultado(transmissao.id_dps, campos)
        primeiro = Transmissao.objects.values().get(pk=transmissao.pk)
        persistence.salvar_resultado(transmissao.id_dps, campos)
        segundo = Transmissao.objects.values().get(pk=transmissao.pk)

        primeiro.pop("updated_at")
        segundo.pop("updated_at")
        self.assertEqual(primeiro, segundo)
        self.assertEqual(segundo["chave_acesso"], CHAVE_NFSE)

    def test_chave_registrada_nao_e_trocada(self):
        transmissao = criar_transmissao(self.empresa, chave_acesso=CHAVE_NFSE)

        with self.assertLogs("nfse.sefin", level="ERROR"):
            persistence.salvar_resultado(transmissao.id_dps, {"chave_acesso": CHAVE_NFSE_2})

        transmissao.refresh_from_db()
        self.assertEqual(transmissao.chave_acesso, CHAVE_NFSE)

    def test_valores_none_nao_apagam_campos(self):
        transmissao = criar_transmissao(self.empresa, numero_nfse="7")
        persistence.salvar_resultado(transmissao.id_dps, {"numero_nfse": None, "mensagem_retorno": "ok"})

        transmissao.refresh_from_db()
        self.assertEqual(transmissao.numero_nfse, "7")
        self.assertEqual(transmissao.mensagem_retorno, "ok")

    def test_chave_de_outra_transmissao(self):
        criar_transmissao(self.empresa, numero=1, chave_acesso=CHAVE_NFSE)
        outra = criar_transmissao(self.empresa, numero=2)

        with self.assertRaises(IntegrityError):
            persistence.salvar_resultado(outra.id_dps, {"chave_acesso": CHAVE_NFSE})

    def test_transmissao_inexistente(self):
        self.assertIsNone(persistence.salvar_resultado("DPS-nao-existe", {"mensagem_retorno": "x"}))

    def test_registrar_transmissao_nao_sobrescreve_dps_com_chave(self):
        transmissao = criar_transmissao(self.empresa, chave_acesso=CHAVE_NFSE, xml_assinado="<original/>")

        with self.assertRaises(Conflict) as ctx:
            persistence.registrar_transmissao(
                self.empresa,
                transmissao.id_dps,
                1,
                "1",
                "<novo/>",
                "<novo-assinado/>",
                "b64",
            )

        self.assertEqual(ctx.exception.existente.pk, transmissao.pk)
        transmissao.refresh_from_db()
        self.assertEqual(transmissao.xml_assinado, "<original/>")

    def test_reenvio_com_o_mesmo_conteudo_reaproveita_o_registro(self):
        transmissao = criar_transmissao(
            self.empresa,
            status_envio=Transmissao.StatusEnvio.ERRO,
            situacao_nfse=Transmissao.Situacao.REJEITADA,
            erros=[{"origem": "TRANSPORTE", "mensagem": "timeout"}],
        )

        persistence.registrar_transmissao(self.empresa, transmissao.id_dps, 1, "1", "<DPS/>", "<DPS/>", "b64")

        transmissao.refresh_from_db()
        self.assertEqual(transmissao.status_envio, Transmissao.StatusEnvio.ENVIADO)
        self.assertEqual(Transmissao.objects.count(), 1)

    def test_outro_conteudo_apos_falha_de_transporte_e_conflito(self):
        transmissao = criar_transmissao(
            self.empresa,
            status_envio=Transmissao.StatusEnvio.ERRO,
            situacao_nfse=Transmissao.Situacao.REJEITADA,
            erros=[{"origem": "TRANSPORTE", "mensagem": "timeout"}],
        )

        with self.assertRaises(Conflict):
            persistence.registrar_transmissao(self.empresa, transmissao.id_dps, 1, "1", "<outra/>", "<outra/>", "b64")

        transmissao.refresh_from_db()
        self.assertEqual(transmissao.xml_original, "<DPS/>")

    def test_outro_conteudo_apos_rejeicao_do_sefin_substitui(self):
        transmissao = criar_transmissao(
            self.empresa,
            status_envio=Transmissao.StatusEnvio.ERRO,
            situacao_nfse=Transmissao.Situacao.REJEITADA,
            erros=[{"Codigo": "E0310", "Descricao": "CNPJ do tomador inválido"}],
        )

        persistence.registrar_transmissao(self.empresa, transmissao.id_dps, 1, "1", "<corrigida/>", "<corrigida/>", "b64")

        transmissao.refresh_from_db()
        self.assertEqual(transmissao.xml_original, "<corrigida/>")
        self.assertEqual(transmissao.status_envio, Transmissao.StatusEnvio.ENVIADO)

    def test_reserva_de_numero(self):
        self.assertEqual(persistence.reservar_numero_dps(self.empresa), 1)
        self.assertEqual(persistence.reservar_numero_dps(self.empresa), 2)
        persistence.atualizar_ultimo_numero(self.empresa.pk, 9)
        self.assertEqual(persistence.reservar_numero_dps(self.empresa), 10)

        self.empresa.refresh_from_db()
        self.assertEqual(self.empresa.ultimo_numero_dps, 10)

    def test_liberar_numero_so_se_ninguem_reservou_depois(self):
        primeiro = persistence.reservar_numero_dps(self.empresa)
        self.assertTrue(persistence.liberar_numero_dps(self.empresa.pk, primeiro))
        self.assertEqual(persistence.reservar_numero_dps(self.empresa), primeiro)

        segundo = persistence.reservar_numero_dps(self.empresa)
        self.assertFalse(persistence.liberar_numero_dps(self.empresa.pk, primeiro))
        self.empresa.refresh_from_db()
        self.assertEqual(self.empresa.ultimo_numero_dps, segundo)

    def test_pendentes(self):
        criar_transmissao(self.empresa, numero=1, estado_processamento="AINDA_PENDENTE")
        criar_transmissao(self.empresa, numero=2, estado_processamento="AUTORIZADA")

        pendentes = persistence.transmissoes_ainda_pendentes()
        self.assertEqual([t.numero_dps for t in pendentes], [1])


@override_settings(NFSE_ENCRYPTION_KEY=CHAVE_TESTE)
class EventoPersistenciaTests(TestCase):
    def setUp(self) -> None:
        self.empresa = criar_empresa()
        self.campos = {
            "chave_acesso": CHAVE_NFSE,
            "tipo_evento": EventoNFSe.TIPO_CANCELAMENTO,
            "numero_sequencial": 1,
            "id_evento": f"PRE{CHAVE_NFSE}101101001",
            "codigo_motivo": 1,
            "motivo": "Erro na emissão da nota",
            "xml_evento": "<pedRegEvento/>",
            "xml_assinado": "<pedRegEvento/>",
        }

    def test_mesma_sequencia_gera_conflito(self):
        primeiro = persistence.inserir_evento(self.empresa, **self.campos)

        with self.assertRaises(Conflict) as ctx:
            persistence.inserir_evento(self.empresa, **self.campos)

        self.assertEqual(ctx.exception.existente.pk, primeiro.pk)
        self.assertEqual(EventoNFSe.objects.count(), 1)

    def test_sequencia_seguinte_e_permitida(self):
        persistence.inserir_evento(self.empresa, **self.campos)
        persistence.inserir_evento(
            self.empresa,
            **dict(self.campos, numero_sequencial=2, id_evento=f"PRE{CHAVE_NFSE}101101002"),
        )
        self.assertEqual(EventoNFSe.objects.count(), 2)

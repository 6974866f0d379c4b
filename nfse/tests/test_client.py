# nfse/tests/test_client.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import os
import stat
import tempfile
from unittest.mock import MagicMock, patch

import requests
from asgiref.sync import async_to_sync

from django.test import SimpleTestCase, override_settings

from nfse.services.sefin.client import RespostaSefin, SefinClient, TipoResposta
from nfse.services.sefin.exceptions import AuthorityRejection, ConfigError, TransportError
from nfse.services.sefin.vault import carregar_credencial
from nfse.tests.factories import BASE_HOMOLOGACAO, CHAVE_NFSE, SENHA_PFX, gerar_pfx


def _http(status_code, corpo=None, texto=""):
    response = MagicMock()
    response.status_code = status_code
    if corpo is None:
        response.json.side_effect = ValueError("sem JSON")
    else:
        response.json.return_value = corpo
    response.text = texto or ("x" if corpo is not None else "")
    return response


class SefinClientTests(SimpleTestCase):
    """
    Cliente HTTP: classificação das respostas e falhas de transporte.
    Nenhum teste acessa a rede: session.request é sempre substituído.
    """

    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        cls.credencial = carregar_credencial(gerar_pfx(), SENHA_PFX)

    def setUp(self):
        self.client = SefinClient(self.credencial, "2")
        self.addCleanup(self.client.close)

    def test_ambiente_invalido(self):
        with self.assertRaises(ConfigError):
            SefinClient(self.credencial, "3")

    def test_base_url_por_ambiente(self):
        self.assertEqual(self.client.base_url, BASE_HOMOLOGACAO)
        with SefinClient(self.credencial, "1") as producao:
            self.assertEqual(producao.base_url, "https://sefin.nfse.gov.br/SefinNacional")

    @override_settings(NFSE_SANDBOX_VERIFY_SSL=False)
    def test_producao_sempre_verifica_tls(self):
        with SefinClient(self.credencial, "1") as producao:
            self.assertTrue(producao.session.verify)
        with SefinClient(self.credencial, "2") as homologacao:
            self.assertFalse(homologacao.session.verify)

    @override_settings(NFSE_SANDBOX_VERIFY_SSL=True)
    def test_homologacao_segue_configuracao(self):
        with SefinClient(self.credencial, "2") as homologacao:
            self.assertTrue(homologacao.session.verify)

    def test_arquivos_pem_privados_e_removidos_no_close(self):
        cliente = SefinClient(self.credencial, "2")
        cert_path, key_path = cliente.session.cert
        self.assertEqual(stat.S_IMODE(os.stat(key_path).st_mode), 0o600)

        cliente.close()
        self.assertFalse(os.path.exists(cert_path))
        self.assertFalse(os.path.exists(key_path))

    def test_falha_ao_gravar_pem_remove_diretorio(self):
        criar_diretorio = tempfile.mkdtemp
        criados = []

        def mkdtemp(**kwargs):
            criados.append(criar_diretorio(**kwargs))
            return criados[-1]

        with patch("nfse.services.sefin.client.tempfile.mkdtemp", side_effect=mkdtemp), patch.object(
            SefinClient, "_escrever_privado", side_effect=[None, OSError("disco cheio")]
        ):
            with self.assertRaises(OSError):
                SefinClient(self.credencial, "2")

        self.assertEqual(len(criados), 1)
        self.assertFalse(os.path.exists(criados[0]))

    def test_sucesso(self):
        corpo = {"codigo": "100", "chaveAcesso": CHAVE_NFSE, "idDps": "DPS1", "dataHoraProcessamento": "x"}
        with patch.object(self.client.session, "request", return_value=_http(201, corpo)) as request:
            resposta = async_to_sync(self.client.enviar_dps)("H4sI")

        method, url = request.call_args.args
        self.assertEqual(method, "POST")
        self.assertEqual(url, f"{BASE_HOMOLOGACAO}/nfse")
        self.assertEqual(request.call_args.kwargs["json"], {"dpsXmlGZipB64": "H4sI"})

        self.assertEqual(resposta.tipo, TipoResposta.SUCESSO)
        self.assertTrue(resposta.ok)
        self.assertEqual(resposta.codigo, "100")
        self.assertEqual(resposta.chave_acesso, CHAVE_NFSE)
        self.assertEqual(resposta.protocolo, "DPS1")
        self.assertEqual(resposta.extras, {"dataHoraProcessamento": "x"})

    def test_erro_estruturado_preserva_erros(self):
        erros = [{"Codigo": "E0014", "Descricao": "DPS já existe"}]
        with patch.object(self.client.session, "request", return_value=_http(400, {"erros": erros})):
            resposta = async_to_sync(self.client.enviar_dps)("H4sI")

        self.assertEqual(resposta.tipo, TipoResposta.ERRO_ESTRUTURADO)
        self.assertEqual(resposta.status_http, 400)
        self.assertEqual(resposta.erros, erros)

    def test_corpo_que_nao_e_json(self):
        with patch.object(self.client.session, "request", return_value=_http(502, None, "Bad Gateway")):
            resposta = async_to_sync(self.client.consultar_nfse)(CHAVE_NFSE)

        self.assertFalse(resposta.ok)
        self.assertEqual(resposta.corpo, {"texto": "Bad Gateway"})

    def test_timeout_vira_transport_error(self):
        with patch.object(self.client.session, "request", side_effect=requests.Timeout("lento")):
            with self.assertRaises(TransportError):
                async_to_sync(self.client.enviar_dps)("H4sI")

    def test_falha_tls_vira_transport_error(self):
        with patch.object(self.client.session, "request", side_effect=requests.exceptions.SSLError("handshake")):
            with self.assertRaises(TransportError):
                async_to_sync(self.client.consultar_chave_acesso)("DPS1")

    def test_conexao_recusada_vira_transport_error(self):
        with patch.object(self.client.session, "request", side_effect=requests.ConnectionError("recusada")):
            with self.assertRaises(TransportError):
                async_to_sync(self.client.consultar_eventos)(CHAVE_NFSE)

    def test_urls_das_consultas(self):
        with patch.object(self.client.session, "request", return_value=_http(200, {})) as request:
            async_to_sync(self.client.consultar_chave_acesso)("DPS123")
            async_to_sync(self.client.consultar_evento)(CHAVE_NFSE, "101101", 1)
            async_to_sync(self.client.registrar_evento)(CHAVE_NFSE, "H4sI")

        urls = [c.args[1] for c in request.call_args_list]
        self.assertEqual(
            urls,
            [
                f"{BASE_HOMOLOGACAO}/dps/DPS123",
                f"{BASE_HOMOLOGACAO}/nfse/{CHAVE_NFSE}/eventos/101101/1",
                f"{BASE_HOMOLOGACAO}/nfse/{CHAVE_NFSE}/eventos",
            ],
        )
        self.assertEqual(
            request.call_args_list[2].kwargs["json"],
            {"pedidoRegistroEventoXmlGZipB64": "H4sI"},
        )

    def test_segmentos_sao_escapados(self):
        self.assertEqual(
            self.client.montar_link_consulta("../x"),
            f"{BASE_HOMOLOGACAO}/nfse/..%2Fx",
        )

    def test_falha_transporte_sem_http(self):
        resposta = RespostaSefin.falha_transporte(TransportError("timeout"))
        self.assertEqual(resposta.tipo, TipoResposta.FALHA_TRANSPORTE)
        self.assertIsNone(resposta.status_http)
        self.assertEqual(resposta.mensagem, "timeout")

    def test_exigir_sucesso_repassa_erros_sem_traducao(self):
        erros = [{"Codigo": "E0014", "Descricao": "DPS já existe"}]
        rejeitada = RespostaSefin(TipoResposta.ERRO_ESTRUTURADO, 400, {"erros": erros, "mensagem": "Rejeitada"})

        with self.assertRaises(AuthorityRejection) as ctx:
            rejeitada.exigir_sucesso()

        self.assertEqual(ctx.exception.erros, erros)
        self.assertEqual(str(ctx.exception), "Rejeitada")

        ok = RespostaSefin(TipoResposta.SUCESSO, 200, {"chaveAcesso": CHAVE_NFSE})
        self.assertIs(ok.exigir_sucesso(), ok)

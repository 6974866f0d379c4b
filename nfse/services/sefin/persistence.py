# nfse/services/sefin/persistence.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from nfse.models import Empresa, EventoNFSe, Transmissao
from nfse.services.sefin.exceptions import Conflict, CredentialError
from nfse.services.sefin.vault import (
    Credencial,
    carregar_credencial,
    criptografar_senha,
    descriptografar_senha,
    validar_vigencia,
)

logger = logging.getLogger("nfse.sefin")


# ============================================================
# Empresa / certificado
# ============================================================


def obter_empresa(cnpj: str) -> Empresa:
    try:
        return Empresa.objects.get(cnpj=cnpj, ativa=True)
    except Empresa.DoesNotExist as exc:
        raise CredentialError(f"Empresa {cnpj} não encontrada ou inativa.") from exc


def salvar_certificado(empresa: Empresa, bundle: bytes, senha: str) -> Credencial:
    """
    Guarda o .pfx e a senha criptografada, registrando titular, emissor e validade.
    """
    credencial = carregar_credencial(bundle, senha)
    empresa.certificado_pfx = bytes(bundle)
    empresa.senha_certificado_encrypted = criptografar_senha(senha)
    empresa.certificado_titular = credencial.titular
    empresa.certificado_emissor = credencial.emissor
    empresa.certificado_validade_inicio = credencial.valido_de
    empresa.certificado_validade = credencial.valido_ate
    empresa.save()
    logger.info(
        "Certificado da empresa %s atualizado (titular=%s, validade=%s).",
        empresa.cnpj,
        credencial.titular,
        credencial.valido_ate,
    )
    return credencial


def carregar_credencial_empresa(empresa: Empresa) -> Credencial:
    """
    Senha descriptografada sob demanda + PKCS#12 + checagem de validade.
    """
    if not empresa.certificado_pfx:
        raise CredentialError(f"A empresa {empresa.cnpj} não tem certificado cadastrado.")
    if not empresa.senha_certificado_encrypted:
        raise CredentialError(f"A empresa {empresa.cnpj} não tem senha de certificado configurada.")

    senha = descriptografar_senha(empresa.senha_certificado_encrypted)
    credencial = carregar_credencial(bytes(empresa.certificado_pfx), senha)
    return validar_vigencia(credencial)


def reservar_numero_dps(empresa: Empresa) -> int:
    """
    Reserva o próximo nDPS da empresa: incrementa ultimo_numero_dps sob
    SELECT ... FOR UPDATE. Duas emissões nunca recebem o mesmo número, e o
    número reservado fica consumido mesmo que o envio falhe por transporte.
    """
    with transaction.atomic():
        travada = Empresa.objects.select_for_update().only("pk", "ultimo_numero_dps").get(pk=empresa.pk)
        numero = int(travada.ultimo_numero_dps or 0) + 1
        travada.ultimo_numero_dps = numero
        travada.updated_at = timezone.now()
        travada.save(update_fields=["ultimo_numero_dps", "updated_at"])
    logger.info("Empresa %s: nDPS %s reservado.", empresa.pk, numero)
    return numero


def liberar_numero_dps(empresa_id: int, numero: int) -> bool:
    """
    Devolve um número reservado que não chegou a ser enviado (DPS inválida).
    Só recua se ninguém reservou outro número depois.
    """
    liberados = Empresa.objects.filter(
        pk=empresa_id,
        ultimo_numero_dps=numero,
    ).update(ultimo_numero_dps=numero - 1, updated_at=timezone.now())
    if liberados:
        logger.info("Empresa %s: nDPS %s liberado (não enviado).", empresa_id, numero)
    return bool(liberados)


def atualizar_ultimo_numero(empresa_id: int, numero: int) -> bool:
    """
    Só avança o contador: UPDATE ... WHERE ultimo_numero_dps < numero.
    Retorna True se atualizou.
    """
    atualizados = Empresa.objects.filter(
        pk=empresa_id,
        ultimo_numero_dps__lt=numero,
    ).update(ultimo_numero_dps=numero, updated_at=timezone.now())
    if atualizados:
        logger.info("Empresa %s: ultimo_numero_dps -> %s", empresa_id, numero)
    else:
        logger.debug("Empresa %s: contador já >= %s, mantido.", empresa_id, numero)
    return bool(atualizados)


# ============================================================
# Transmissões (DPS + NFS-e)
# ============================================================


def registrar_transmissao(
    empresa: Empresa,
    id_dps: str,
    numero: int,
    serie: str,
    xml_original: str,
    xml_assinado: str,
    dps_base64: str,
) -> Transmissao:
    """
    Cria (ou reaproveita) o registro da DPS antes do envio.

    O mesmo id_dps com o mesmo conteúdo é um reenvio e reaproveita o registro.
    Conteúdo diferente só substitui uma DPS rejeitada pelo Sefin com erros
    estruturados; em qualquer outro caso (chave atribuída, envio em andamento
    ou falha de transporte) o número pode já ter sido aceito e a DPS nova
    recebe Conflict.
    """
    with transaction.atomic():
        transmissao, criada = Transmissao.objects.select_for_update().get_or_create(
            id_dps=id_dps,
            defaults={
                "empresa": empresa,
                "numero_dps": numero,
                "serie_dps": serie,
                "xml_original": xml_original,
                "xml_assinado": xml_assinado,
                "dps_base64": dps_base64,
                "status_envio": Transmissao.StatusEnvio.ENVIADO,
            },
        )
        if not criada:
            if transmissao.xml_original != xml_original:
                if not transmissao.numero_reutilizavel:
                    logger.error(
                        "DPS %s já registrada com outro conteúdo (status=%s, chave=%s); envio bloqueado.",
                        id_dps,
                        transmissao.status_envio,
                        transmissao.chave_acesso,
                    )
                    raise Conflict(
                        f"A DPS {id_dps} já foi registrada com outro conteúdo.",
                        existente=transmissao,
                    )
                transmissao.xml_original = xml_original
                transmissao.xml_assinado = xml_assinado
                transmissao.dps_base64 = dps_base64
            elif transmissao.chave_acesso:
                logger.info(
                    "DPS %s já possui chave %s; reenvio mantém o XML original.",
                    id_dps,
                    transmissao.chave_acesso,
                )
            transmissao.status_envio = Transmissao.StatusEnvio.ENVIADO
            transmissao.save()
    return transmissao


def buscar_chave_por_id_dps(id_dps: str) -> Optional[str]:
    return (
        Transmissao.objects.filter(id_dps=id_dps, chave_acesso__isnull=False)
        .values_list("chave_acesso", flat=True)
        .first()
    )


def salvar_resultado(id_dps: str, campos: Dict[str, Any]) -> Optional[Transmissao]:
    """
    Atualiza a transmissão com o resultado da reconciliação.

    Idempotente: aplicar os mesmos campos duas vezes produz o mesmo registro.
    A chave de acesso já gravada nunca é trocada.
    """
    with transaction.atomic():
        transmissao = Transmissao.objects.select_for_update().filter(id_dps=id_dps).first()
        if transmissao is None:
            logger.warning("salvar_resultado: transmissão %s não existe.", id_dps)
            return None

        campos = dict(campos)
        nova_chave = campos.pop("chave_acesso", None)
        if nova_chave:
            if transmissao.chave_acesso and transmissao.chave_acesso != nova_chave:
                logger.error(
                    "DPS %s: chave recebida %s difere da chave registrada %s; mantendo a registrada.",
                    id_dps,
                    nova_chave,
                    transmissao.chave_acesso,
                )
            else:
                transmissao.chave_acesso = nova_chave

        for field_name, value in campos.items():
            if value is None:
                continue
            setattr(transmissao, field_name, value)

        try:
            transmissao.save()
        except IntegrityError:
            # chave já usada por outra DPS
            logger.exception("DPS %s: chave %s já pertence a outra transmissão.", id_dps, nova_chave)
            raise

    logger.info(
        "Transmissao %s atualizada (estado=%s, chave=%s, situacao=%s)",
        id_dps,
        transmissao.estado_processamento,
        transmissao.chave_acesso,
        transmissao.situacao_nfse,
    )
    return transmissao


def obter_transmissao(id_dps: str) -> Optional[Transmissao]:
    return Transmissao.objects.select_related("empresa").filter(id_dps=id_dps).first()


def obter_transmissao_por_chave(chave_acesso: str) -> Optional[Transmissao]:
    return Transmissao.objects.select_related("empresa").filter(chave_acesso=chave_acesso).first()


def transmissoes_ainda_pendentes(limite: int = 100) -> List[Transmissao]:
    from nfse.services.sefin.reconciler import EstadoProcessamento

    return list(
        Transmissao.objects.select_related("empresa")
        .filter(estado_processamento=EstadoProcessamento.AINDA_PENDENTE.value)
        .order_by("created_at")[:limite]
    )


# ============================================================
# Eventos
# ============================================================


def buscar_evento(chave_acesso: str, tipo_evento: str, numero_sequencial: int) -> Optional[EventoNFSe]:
    return EventoNFSe.objects.filter(
        chave_acesso=chave_acesso,
        tipo_evento=tipo_evento,
        numero_sequencial=numero_sequencial,
    ).first()


def inserir_evento(empresa: Empresa, **campos: Any) -> EventoNFSe:
    """
    Inserção só-acrescenta; a unicidade (chave, tipo, sequência) é do banco.
    """
    try:
        with transaction.atomic():
            return EventoNFSe.objects.create(empresa=empresa, **campos)
    except IntegrityError as exc:
        existente = buscar_evento(
            campos.get("chave_acesso"),
            campos.get("tipo_evento"),
            campos.get("numero_sequencial", 1),
        )
        raise Conflict("Evento já registrado para esta NFS-e.", existente=existente) from exc


def atualizar_evento(evento: EventoNFSe, **campos: Any) -> EventoNFSe:
    for field_name, value in campos.items():
        setattr(evento, field_name, value)
    evento.save()
    logger.info(
        "Evento %s atualizado (status=%s)",
        evento.id_evento,
        evento.status,
    )
    return evento

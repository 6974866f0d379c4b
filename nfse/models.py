# nfse/models.py
from __future__ import annotations

from datetime import timedelta

from django.db import models
from django.utils import timezone


class Empresa(models.Model):
    """
    Representa um emissor de NFS-e (CNPJ).
    Guarda o certificado A1, a senha criptografada, o ambiente e o contador de DPS.
    """

    AMBIENTE_PRODUCAO = "1"
    AMBIENTE_HOMOLOGACAO = "2"
    AMBIENTE_CHOICES = (
        (AMBIENTE_PRODUCAO, "Produção"),
        (AMBIENTE_HOMOLOGACAO, "Produção restrita (homologação)"),
    )

    # ----- Dados do emissor -----
    cnpj = models.CharField(max_length=14, unique=True)
    razao_social = models.CharField(max_length=255)
    nome_fantasia = models.CharField(max_length=255, blank=True)
    inscricao_municipal = models.CharField(max_length=20, blank=True)
    codigo_municipio = models.CharField(
        max_length=7,
        blank=True,
        help_text="Código IBGE (7 dígitos) do município do emissor. Usado como cLocEmi.",
    )

    # ----- Ambiente Sefin -----
    tipo_ambiente = models.CharField(
        max_length=1,
        choices=AMBIENTE_CHOICES,
        default=AMBIENTE_HOMOLOGACAO,
        help_text="Ambiente de emissão (1=Produção, 2=Produção restrita).",
    )

    # ----- Certificado A1 -----
    certificado_pfx = models.BinaryField(
        null=True,
        blank=True,
        help_text="Conteúdo binário do certificado .pfx/.p12.",
    )
    senha_certificado_encrypted = models.TextField(
        blank=True,
        help_text="Senha do certificado criptografada com NFSE_ENCRYPTION_KEY (AES-256-GCM).",
    )
    certificado_titular = models.CharField(max_length=255, blank=True)
    certificado_emissor = models.CharField(max_length=255, blank=True)
    certificado_validade_inicio = models.DateTimeField(null=True, blank=True)
    certificado_validade = models.DateTimeField(null=True, blank=True)

    # ----- Numeração -----
    ultimo_numero_dps = models.PositiveBigIntegerField(
        default=0,
        help_text="Último nDPS usado. Só avança (atualização condicional).",
    )

    # ----- Estado -----
    ativa = models.BooleanField(
        default=True,
        help_text="Se desativada, a empresa não pode emitir novas NFS-e.",
    )

    # ----- Auditoria -----
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Empresa emissora"
        verbose_name_plural = "Empresas emissoras"

    def __str__(self) -> str:
        return f"{self.razao_social} ({self.cnpj})"

    @property
    def em_producao(self) -> bool:
        return self.tipo_ambiente == self.AMBIENTE_PRODUCAO

    @property
    def dias_para_vencimento(self) -> int | None:
        """
        Dias restantes até o vencimento do certificado (negativo se já venceu).
        Retorna None se a validade não foi registrada.
        """
        if not self.certificado_validade:
            return None
        return (self.certificado_validade - timezone.now()).days


class Transmissao(models.Model):
    """
    Uma DPS enviada ao Sefin e, quando aceita, os dados da NFS-e emitida.

    A DPS (id_dps, xml assinado, payload codificado) é imutável depois de assinada;
    os campos da NFS-e são preenchidos pela reconciliação. A chave de acesso,
    uma vez conhecida, não muda mais.
    """

    class StatusEnvio(models.TextChoices):
        PENDENTE = "PENDENTE", "Pendente de envio"
        ENVIADO = "ENVIADO", "Enviado ao Sefin"
        SUCESSO = "SUCESSO", "Aceito"
        ERRO = "ERRO", "Erro"

    class Situacao(models.TextChoices):
        AUTORIZADA = "AUTORIZADA", "Autorizada"
        PENDENTE = "PENDENTE", "Pendente"
        PROCESSANDO = "PROCESSANDO", "Em processamento"
        REJEITADA = "REJEITADA", "Rejeitada"

    empresa = models.ForeignKey(
        Empresa,
        related_name="transmissoes",
        on_delete=models.PROTECT,
    )

    # ----- DPS -----
    id_dps = models.CharField(max_length=45, unique=True)
    numero_dps = models.PositiveBigIntegerField()
    serie_dps = models.CharField(max_length=5)
    xml_original = models.TextField()
    xml_assinado = models.TextField()
    dps_base64 = models.TextField()

    # ----- Resposta do Sefin -----
    status_envio = models.CharField(
        max_length=20,
        choices=StatusEnvio.choices,
        default=StatusEnvio.PENDENTE,
        db_index=True,
    )
    estado_processamento = models.CharField(max_length=20, blank=True, db_index=True)
    codigo_retorno = models.CharField(max_length=20, blank=True)
    mensagem_retorno = models.TextField(blank=True)
    resposta_completa = models.JSONField(default=dict, blank=True)
    erros = models.JSONField(default=list, blank=True)
    protocolo = models.CharField(max_length=100, blank=True)
    tempo_processamento_ms = models.PositiveIntegerField(null=True, blank=True)

    # ----- NFS-e emitida -----
    chave_acesso = models.CharField(
        max_length=50,
        unique=True,
        null=True,
        blank=True,
    )
    numero_nfse = models.CharField(max_length=20, blank=True)
    codigo_verificacao = models.CharField(max_length=50, blank=True)
    data_emissao_nfse = models.DateTimeField(null=True, blank=True)
    situacao_nfse = models.CharField(
        max_length=20,
        choices=Situacao.choices,
        blank=True,
        db_index=True,
    )
    xml_nfse = models.TextField(blank=True)
    dps_limpa = models.TextField(blank=True)
    link_consulta = models.URLField(max_length=255, blank=True)

    # ----- Auditoria -----
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Transmissão de DPS"
        verbose_name_plural = "Transmissões de DPS"
        ordering = ("-created_at",)

    def __str__(self) -> str:
        return f"{self.id_dps} ({self.chave_acesso or self.status_envio})"

    @property
    def autorizada(self) -> bool:
        return bool(self.chave_acesso) and self.situacao_nfse == self.Situacao.AUTORIZADA

    @property
    def numero_reutilizavel(self) -> bool:
        """
        True só quando o Sefin rejeitou a DPS com erros estruturados: o número
        não foi consumido. Falha de transporte não prova nada.
        """
        if self.chave_acesso or self.situacao_nfse != self.Situacao.REJEITADA:
            return False
        return not any(isinstance(e, dict) and e.get("origem") == "TRANSPORTE" for e in self.erros or [])


class EventoNFSe(models.Model):
    """
    Evento de ciclo de vida (cancelamento / substituição) de uma NFS-e.
    Só se acrescenta; (chave_acesso, tipo_evento, numero_sequencial) é único.
    """

    TIPO_CANCELAMENTO = "101101"
    TIPO_SUBSTITUICAO = "105102"
    TIPO_CHOICES = (
        (TIPO_CANCELAMENTO, "Cancelamento"),
        (TIPO_SUBSTITUICAO, "Cancelamento por substituição"),
    )

    class Status(models.TextChoices):
        PENDENTE = "PENDENTE", "Pendente"
        REGISTRADO = "REGISTRADO", "Registrado"
        REJEITADO = "REJEITADO", "Rejeitado"

    empresa = models.ForeignKey(
        Empresa,
        related_name="eventos",
        on_delete=models.PROTECT,
    )
    chave_acesso = models.CharField(max_length=50, db_index=True)
    tipo_evento = models.CharField(max_length=6, choices=TIPO_CHOICES)
    numero_sequencial = models.PositiveSmallIntegerField(default=1)
    id_evento = models.CharField(max_length=62)

    codigo_motivo = models.PositiveSmallIntegerField()
    motivo = models.CharField(max_length=255)
    chave_substituta = models.CharField(max_length=50, blank=True)

    xml_evento = models.TextField()
    xml_assinado = models.TextField()
    xml_retorno = models.TextField(blank=True)

    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDENTE,
        db_index=True,
    )
    codigo_retorno = models.CharField(max_length=20, blank=True)
    mensagem_retorno = models.TextField(blank=True)
    resposta_completa = models.JSONField(default=dict, blank=True)
    erros = models.JSONField(default=list, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Evento de NFS-e"
        verbose_name_plural = "Eventos de NFS-e"
        ordering = ("-created_at",)
        constraints = [
            models.UniqueConstraint(
                fields=("chave_acesso", "tipo_evento", "numero_sequencial"),
                name="nfse_evento_unico_por_sequencia",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.get_tipo_evento_display()} {self.chave_acesso} #{self.numero_sequencial}"


def certificados_a_vencer(dias: int = 30):
    """
    Empresas ativas cujo certificado vence nos próximos `dias` (inclui já vencidos).
    """
    limite = timezone.now() + timedelta(days=dias)
    return Empresa.objects.filter(
        ativa=True,
        certificado_validade__isnull=False,
        certificado_validade__lte=limite,
    ).order_by("certificado_validade")

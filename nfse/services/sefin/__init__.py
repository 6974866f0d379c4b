# nfse/services/sefin/__init__.py
"""
Serviços relacionados ao Sefin Nacional (NFS-e padrão nacional):

- vault: certificado A1 (PKCS#12) e criptografia da senha.
- validator: regras de negócio da DPS antes da assinatura.
- xml_dps_builder / xml_evento_builder: construção do XML.
- signer: assinatura XML-DSig (RSA-SHA256, exc-c14n).
- codec: GZip + Base64 para o transporte JSON.
- client: cliente HTTP com TLS mútuo.
- reconciler: máquina de estados da resposta do Sefin.
- eventos: cancelamento e substituição.
- workflow: orquestração (emitir, registrar evento, validar).
"""

# nfse/services/__init__.py
"""
Serviços de domínio do módulo NFS-e:

- sefin: assinatura, transporte e reconciliação com o Sefin Nacional.

Os submódulos específicos vivem em:
- nfse/services/sefin/
"""

"""Exceptions raised by the reconciliation pipeline."""

from __future__ import annotations

from typing import Iterable, List, Optional


class ReconciliationError(Exception):
    """Base class for every error raised by the pipeline."""


class ClientValidationError(ReconciliationError):
    """The payload for an automatic customer creation is malformed."""

    def __init__(self, fields: Iterable[str], details: Optional[str] = None) -> None:
        self.fields: List[str] = list(fields)
        message = f"Dados inválidos para criação do cliente: {', '.join(self.fields)}"
        if details:
            message = f"{message} ({details})"
        super().__init__(message)


class ResolutionError(ReconciliationError):
    """A store lookup failed while resolving an invoice."""

    prefix = "Erro de consulta"

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(f"{self.prefix}: {cause}")


class ClientResolutionError(ResolutionError):
    prefix = "Erro ao resolver cliente"


class ProductMatchingError(ResolutionError):
    prefix = "Erro ao buscar produtos correspondentes"


class ClientCreationError(ReconciliationError):
    """The customer store refused the insert of an automatically created customer."""

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(f"Erro ao criar cliente automaticamente: {cause}")


class DuplicateTaxIdError(ReconciliationError):
    def __init__(self, tenant_id: int, tax_id: str) -> None:
        self.tenant_id = tenant_id
        self.tax_id = tax_id
        super().__init__(f"Já existe um cliente com o documento {tax_id} no tenant {tenant_id}")


class CertificateCreationError(ReconciliationError):
    """A certificate draft was rejected by the certificate writer."""


class IncompleteDecisionError(ReconciliationError):
    """Commit attempted before the human review was complete."""

    def __init__(self, missing_lines: Iterable[int] = (), missing_customer: bool = False, message: Optional[str] = None) -> None:
        self.missing_lines: List[int] = sorted(missing_lines)
        self.missing_customer = missing_customer
        if message is None:
            problems = []
            if missing_customer:
                problems.append("cliente não selecionado")
            if self.missing_lines:
                lines = ", ".join(str(index + 1) for index in self.missing_lines)
                problems.append(f"itens sem produto mapeado: {lines}")
            message = "Decisão incompleta: " + "; ".join(problems)
        super().__init__(message)


class InvalidTransitionError(ReconciliationError):
    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Transição inválida da importação: {current} -> {target}")


__all__ = [
    "ReconciliationError",
    "ClientValidationError",
    "ResolutionError",
    "ClientResolutionError",
    "ProductMatchingError",
    "ClientCreationError",
    "DuplicateTaxIdError",
    "CertificateCreationError",
    "IncompleteDecisionError",
    "InvalidTransitionError",
]

"""Resolution of the NF-e buyer against the tenant's customers."""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, replace
from typing import Iterable, List, Optional, Tuple

from pydantic import BaseModel, ValidationError, validator

from ..config import ClientSettings
from .errors import ClientCreationError, ClientResolutionError, ClientValidationError, ReconciliationError
from .models import (
    ClientConflict,
    ClientResolutionResult,
    Customer,
    InvoiceBuyerIdentity,
    ResolutionAction,
    SuggestedClientData,
)
from .similarity import clean_document, extract_search_terms, text_similarity
from .stores import CustomerStore


LOGGER = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ClientCreationPayload(BaseModel):
    """Schema a customer must satisfy before being created automatically."""

    name: str
    country: str
    tenant_id: int
    tax_id: Optional[str] = None
    tax_id_type: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    quality_email: Optional[str] = None
    is_national: bool = True
    internal_code: Optional[str] = None

    @validator("name", "country")
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("campo obrigatório")
        return value.strip()

    @validator("quality_email")
    def _valid_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return value
        if not EMAIL_RE.match(value.strip()):
            raise ValueError("email inválido")
        return value.strip()

    @validator("tenant_id", pre=True)
    def _numeric_tenant(cls, value):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError("tenant deve ser numérico")
        return value


class ClientResolver:
    """Find the customer an NF-e was issued to, or propose creating one.

    Resolution short-circuits on the first success:

    1. exact CNPJ (or CPF when there is no CNPJ) match -> ``found``
    2. similar names / same CNPJ root -> ``conflict`` (a human chooses)
    3. nothing resembling the buyer -> ``create``
    """

    def __init__(self, customers: CustomerStore, settings: Optional[ClientSettings] = None) -> None:
        self.customers = customers
        self.settings = settings or ClientSettings()

    def resolve_client(self, buyer: InvoiceBuyerIdentity, tenant_id: int) -> ClientResolutionResult:
        try:
            customer = self._find_exact_match(buyer, tenant_id)
            if customer:
                LOGGER.debug("Buyer %s resolved to customer %s", buyer.legal_name, customer.id)
                return ClientResolutionResult(action=ResolutionAction.FOUND, customer=customer)

            conflicts = self._find_potential_conflicts(buyer, tenant_id)
        except ReconciliationError:
            raise
        except Exception as exc:
            LOGGER.error("Customer lookup failed for buyer %s: %s", buyer.legal_name, exc)
            raise ClientResolutionError(exc) from exc

        suggested = self.prepare_suggested_data(buyer, tenant_id)
        if conflicts:
            LOGGER.debug("Buyer %s has %s possible customers", buyer.legal_name, len(conflicts))
            return ClientResolutionResult(action=ResolutionAction.CONFLICT, conflicts=conflicts, suggested_data=suggested)
        return ClientResolutionResult(action=ResolutionAction.CREATE, suggested_data=suggested)

    def bulk_resolve_clients(self, buyers: Iterable[InvoiceBuyerIdentity], tenant_id: int) -> List[ClientResolutionResult]:
        """Resolve several buyers; a failing buyer is handed to a human as an empty conflict."""

        results: List[ClientResolutionResult] = []
        for buyer in buyers:
            try:
                results.append(self.resolve_client(buyer, tenant_id))
            except ClientResolutionError as exc:
                LOGGER.warning("Falling back to manual resolution for %s: %s", buyer.legal_name, exc)
                results.append(
                    ClientResolutionResult(
                        action=ResolutionAction.CONFLICT,
                        conflicts=[],
                        suggested_data=self.prepare_suggested_data(buyer, tenant_id),
                    )
                )
        return results

    def _find_exact_match(self, buyer: InvoiceBuyerIdentity, tenant_id: int) -> Optional[Customer]:
        if buyer.cnpj:
            document = clean_document(buyer.cnpj)
        elif buyer.cpf:
            document = clean_document(buyer.cpf)
        else:
            return None
        if not document:
            return None
        return self.customers.find_by_tax_id(tenant_id, document)

    def _find_potential_conflicts(self, buyer: InvoiceBuyerIdentity, tenant_id: int) -> List[ClientConflict]:
        conflicts: List[ClientConflict] = []

        terms = extract_search_terms(buyer.legal_name)
        if terms:
            for customer in self.customers.search_by_name(tenant_id, terms):
                similarity = text_similarity(buyer.legal_name, customer.name)
                if similarity > self.settings.name_similarity_threshold:
                    conflicts.append(
                        ClientConflict(
                            customer=customer,
                            similarity=similarity,
                            reason=f"Nome similar ({int(similarity * 100 + 0.5)}% de similaridade)",
                        )
                    )

        if buyer.cnpj:
            cnpj = clean_document(buyer.cnpj)
            root = cnpj[: self.settings.tax_root_length]
            for customer in self.customers.find_by_tax_id_prefix(tenant_id, root):
                if customer.tax_id and clean_document(customer.tax_id) != cnpj:
                    conflicts.append(
                        ClientConflict(
                            customer=customer,
                            similarity=self.settings.tax_root_similarity,
                            reason="CNPJ com base similar (possível divergência de formatação)",
                        )
                    )

        unique: List[ClientConflict] = []
        seen = set()
        for conflict in conflicts:
            if conflict.customer.id in seen:
                continue
            seen.add(conflict.customer.id)
            unique.append(conflict)
        unique.sort(key=lambda conflict: conflict.similarity, reverse=True)
        return unique[: self.settings.max_conflicts]

    def prepare_suggested_data(self, buyer: InvoiceBuyerIdentity, tenant_id: int) -> SuggestedClientData:
        if buyer.cnpj:
            tax_id, tax_id_type = clean_document(buyer.cnpj), "CNPJ"
        elif buyer.cpf:
            tax_id, tax_id_type = clean_document(buyer.cpf), "CPF"
        else:
            tax_id, tax_id_type = None, None

        return SuggestedClientData(
            name=buyer.legal_name,
            tenant_id=tenant_id,
            country=self.settings.home_country,
            tax_id=tax_id or None,
            tax_id_type=tax_id_type if tax_id else None,
            address=buyer.address.format(),
            phone=buyer.phone,
            quality_email=buyer.email,
            is_national=True,
        )

    def auto_create_client(self, data: SuggestedClientData) -> Tuple[int, str]:
        """Validate ``data`` and insert it as a new customer.

        Returns the ``(id, name)`` of the created customer.  Nothing is written
        when the payload is invalid.
        """

        payload = self.validate_client_data(data)
        try:
            if not payload.internal_code:
                payload = replace(payload, internal_code=self.generate_internal_code(payload.tenant_id))
            customer = self.customers.insert(payload)
        except Exception as exc:
            LOGGER.error("Automatic creation of customer %s failed: %s", payload.name, exc)
            raise ClientCreationError(exc) from exc

        LOGGER.info("Created customer %s (%s) with code %s", customer.id, customer.name, customer.internal_code)
        return customer.id, customer.name

    @staticmethod
    def validate_client_data(data: SuggestedClientData) -> SuggestedClientData:
        try:
            validated = ClientCreationPayload(**asdict(data))
        except ValidationError as exc:
            fields = []
            for error in exc.errors():
                name = ".".join(str(part) for part in error.get("loc", ())) or "payload"
                if name not in fields:
                    fields.append(name)
            raise ClientValidationError(fields, details=str(exc)) from exc
        return SuggestedClientData(**validated.dict())

    def generate_internal_code(self, tenant_id: int) -> str:
        prefix = self.settings.internal_code_prefix
        last = self.customers.latest(tenant_id)
        if last and last.internal_code:
            match = re.search(rf"{re.escape(prefix)}(\d+)", last.internal_code)
            if match:
                return f"{prefix}{int(match.group(1)) + 1:04d}"
        return f"{prefix}0001"


__all__ = ["ClientResolver", "ClientCreationPayload"]

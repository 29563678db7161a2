"""Tenant scoped store contracts consumed by the resolvers and the pipeline.

The reconciliation core never talks to a database directly: every lookup goes
through one of the protocols below.  The in-memory implementations back the
tests and the JSON workspace (:mod:`nfe_reconciler.core.storage`).
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import replace
from datetime import date
from typing import Dict, Iterable, List, Optional, Protocol

from .errors import CertificateCreationError, DuplicateTaxIdError
from .models import (
    Customer,
    EntryCertificate,
    IssuedCertificate,
    IssuedCertificateDraft,
    ProductVariant,
    SuggestedClientData,
)
from .similarity import clean_document


LOGGER = logging.getLogger(__name__)

APPROVED_STATUSES = ("APPROVED", "Aprovado")


class CustomerStore(Protocol):
    def find_by_tax_id(self, tenant_id: int, tax_id: str) -> Optional[Customer]:
        ...

    def search_by_name(self, tenant_id: int, terms: Iterable[str]) -> List[Customer]:
        """Customers whose name contains any of ``terms`` (case-insensitive)."""
        ...

    def find_by_tax_id_prefix(self, tenant_id: int, prefix: str) -> List[Customer]:
        ...

    def insert(self, payload: SuggestedClientData) -> Customer:
        ...

    def latest(self, tenant_id: int) -> Optional[Customer]:
        """Most recently created customer of the tenant."""
        ...

    def get(self, tenant_id: int, customer_id: int) -> Optional[Customer]:
        ...


class CatalogStore(Protocol):
    def list_active_variants(self, tenant_id: int) -> List[ProductVariant]:
        ...

    def get_variant(self, tenant_id: int, variant_id: int) -> Optional[ProductVariant]:
        ...


class CertificateWriter(Protocol):
    def create_issued_certificate(self, draft: IssuedCertificateDraft) -> IssuedCertificate:
        ...

    def get_entry_certificate(self, tenant_id: int, certificate_id: int) -> Optional[EntryCertificate]:
        ...

    def available_lots(self, tenant_id: int, variant_id: int) -> List[EntryCertificate]:
        """Approved lots of the variant, first to expire first."""
        ...


class MappingPreferenceStore(Protocol):
    def lookup(self, tenant_id: int, product_code: str) -> Optional[int]:
        ...

    def save(self, tenant_id: int, product_code: str, description: str, variant_id: int, manual: bool = True) -> None:
        ...


class InMemoryCustomerStore:
    """Customer store keeping records in insertion order."""

    def __init__(self, customers: Iterable[Customer] = ()) -> None:
        self._lock = threading.Lock()
        self._customers: List[Customer] = []
        for customer in customers:
            self._customers.append(customer)
        start = max((customer.id for customer in self._customers), default=0) + 1
        self._ids = itertools.count(start)

    @property
    def customers(self) -> List[Customer]:
        return list(self._customers)

    def _tenant(self, tenant_id: int) -> List[Customer]:
        return [customer for customer in self._customers if customer.tenant_id == tenant_id]

    def find_by_tax_id(self, tenant_id: int, tax_id: str) -> Optional[Customer]:
        for customer in self._tenant(tenant_id):
            if customer.tax_id and customer.tax_id == tax_id:
                return customer
        return None

    def search_by_name(self, tenant_id: int, terms: Iterable[str]) -> List[Customer]:
        lowered = [term.lower() for term in terms if term]
        if not lowered:
            return []
        return [
            customer
            for customer in self._tenant(tenant_id)
            if any(term in customer.name.lower() for term in lowered)
        ]

    def find_by_tax_id_prefix(self, tenant_id: int, prefix: str) -> List[Customer]:
        if not prefix:
            return []
        return [customer for customer in self._tenant(tenant_id) if customer.tax_id and customer.tax_id.startswith(prefix)]

    def insert(self, payload: SuggestedClientData) -> Customer:
        tax_id = clean_document(payload.tax_id) or None
        with self._lock:
            if tax_id and self.find_by_tax_id(payload.tenant_id, tax_id):
                raise DuplicateTaxIdError(payload.tenant_id, tax_id)
            customer = Customer(
                id=next(self._ids),
                tenant_id=payload.tenant_id,
                name=payload.name,
                tax_id=tax_id,
                tax_id_type=payload.tax_id_type,
                address=payload.address,
                phone=payload.phone,
                quality_email=payload.quality_email or None,
                internal_code=payload.internal_code,
                is_national=payload.is_national,
                country=payload.country,
            )
            self._customers.append(customer)
        LOGGER.debug("Inserted customer %s (%s) for tenant %s", customer.id, customer.name, customer.tenant_id)
        return customer

    def latest(self, tenant_id: int) -> Optional[Customer]:
        customers = self._tenant(tenant_id)
        if not customers:
            return None
        return max(customers, key=lambda customer: customer.id)

    def get(self, tenant_id: int, customer_id: int) -> Optional[Customer]:
        for customer in self._tenant(tenant_id):
            if customer.id == customer_id:
                return customer
        return None


class InMemoryCatalogStore:
    def __init__(self, variants: Iterable[ProductVariant] = ()) -> None:
        self._variants: Dict[int, ProductVariant] = {variant.id: variant for variant in variants}

    def refresh(self, variants: Iterable[ProductVariant]) -> None:
        self._variants = {variant.id: variant for variant in variants}

    @property
    def variants(self) -> List[ProductVariant]:
        return list(self._variants.values())

    def list_active_variants(self, tenant_id: int) -> List[ProductVariant]:
        return [variant for variant in self._variants.values() if variant.tenant_id == tenant_id and variant.active]

    def get_variant(self, tenant_id: int, variant_id: int) -> Optional[ProductVariant]:
        variant = self._variants.get(variant_id)
        if variant is None or variant.tenant_id != tenant_id:
            return None
        return variant


class InMemoryCertificateStore:
    """Certificate writer validating drafts against the catalogue and the lots."""

    def __init__(self, catalog: CatalogStore, entry_certificates: Iterable[EntryCertificate] = ()) -> None:
        self.catalog = catalog
        self._lock = threading.Lock()
        self._entries: Dict[int, EntryCertificate] = {entry.id: entry for entry in entry_certificates}
        self._issued: List[IssuedCertificate] = []
        self._ids = itertools.count(1)

    @property
    def issued(self) -> List[IssuedCertificate]:
        return list(self._issued)

    @property
    def entry_certificates(self) -> List[EntryCertificate]:
        return list(self._entries.values())

    def add_entry_certificate(self, entry: EntryCertificate) -> None:
        self._entries[entry.id] = entry

    def get_entry_certificate(self, tenant_id: int, certificate_id: int) -> Optional[EntryCertificate]:
        entry = self._entries.get(certificate_id)
        if entry is None or entry.tenant_id != tenant_id:
            return None
        return entry

    def available_lots(self, tenant_id: int, variant_id: int) -> List[EntryCertificate]:
        lots = [
            entry
            for entry in self._entries.values()
            if entry.tenant_id == tenant_id and entry.variant_id == variant_id and entry.status in APPROVED_STATUSES
        ]
        # lots without an expiration date go last
        return sorted(lots, key=lambda entry: (entry.expiration_date is None, entry.expiration_date or date.max, entry.id))

    def create_issued_certificate(self, draft: IssuedCertificateDraft) -> IssuedCertificate:
        if draft.sold_quantity <= 0:
            raise CertificateCreationError(f"Quantidade vendida inválida: {draft.sold_quantity}")
        if self.catalog.get_variant(draft.tenant_id, draft.variant_id) is None:
            raise CertificateCreationError(f"Produto {draft.variant_id} não encontrado")
        if draft.entry_certificate_id is not None:
            entry = self.get_entry_certificate(draft.tenant_id, draft.entry_certificate_id)
            if entry is None:
                raise CertificateCreationError(f"Certificado de entrada {draft.entry_certificate_id} não encontrado")
            if entry.variant_id != draft.variant_id:
                raise CertificateCreationError(
                    f"Lote {entry.internal_lot} não pertence ao produto {draft.variant_id}"
                )
            if entry.status not in APPROVED_STATUSES:
                raise CertificateCreationError(f"Lote {entry.internal_lot} não aprovado (status {entry.status})")

        with self._lock:
            certificate = IssuedCertificate(id=next(self._ids), **vars(draft))
            self._issued.append(certificate)
        return certificate

    def restore(self, certificates: Iterable[IssuedCertificate]) -> None:
        with self._lock:
            self._issued = [replace(certificate) for certificate in certificates]
            start = max((certificate.id for certificate in self._issued), default=0) + 1
            self._ids = itertools.count(start)


__all__ = [
    "CustomerStore",
    "CatalogStore",
    "CertificateWriter",
    "MappingPreferenceStore",
    "InMemoryCustomerStore",
    "InMemoryCatalogStore",
    "InMemoryCertificateStore",
    "APPROVED_STATUSES",
]

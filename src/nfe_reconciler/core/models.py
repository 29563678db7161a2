"""Dataclasses describing the domain objects handled by the reconciliation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, List, Optional


@dataclass(frozen=True)
class Address:
    """Postal address of an invoice buyer (``enderDest``)."""

    street: Optional[str] = None
    number: Optional[str] = None
    complement: Optional[str] = None
    district: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None

    def format(self) -> str:
        parts = [
            self.street,
            self.number,
            self.complement,
            self.district,
            self.city,
            self.state,
            self.postal_code,
        ]
        return ", ".join(part for part in parts if part)


@dataclass(frozen=True)
class InvoiceBuyerIdentity:
    """Buyer (``dest``) of an NF-e as produced by the upstream parser."""

    legal_name: str
    cnpj: Optional[str] = None
    cpf: Optional[str] = None
    address: Address = field(default_factory=Address)
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class InvoiceLineItem:
    """Line item (``det/prod``) of an NF-e."""

    code: str
    description: str
    quantity: float
    unit: Optional[str]
    unit_price: float
    total_price: float
    ncm: Optional[str] = None
    cfop: Optional[str] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class InvoiceHeader:
    number: str
    series: Optional[str] = None
    issue_date: Optional[date] = None
    access_key: Optional[str] = None
    operation_nature: Optional[str] = None


@dataclass(frozen=True)
class Invoice:
    header: InvoiceHeader
    buyer: InvoiceBuyerIdentity
    items: List[InvoiceLineItem] = field(default_factory=list)


@dataclass
class Customer:
    id: int
    tenant_id: int
    name: str
    tax_id: Optional[str] = None
    tax_id_type: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    quality_email: Optional[str] = None
    internal_code: Optional[str] = None
    is_national: bool = True
    country: Optional[str] = None


@dataclass
class ProductCategory:
    id: int
    name: str


@dataclass
class ProductSubcategory:
    id: int
    name: str
    category: ProductCategory


@dataclass
class ProductBase:
    id: int
    technical_name: str
    subcategory: ProductSubcategory
    commercial_name: Optional[str] = None
    ncm: Optional[str] = None


@dataclass
class ProductVariant:
    """Sellable specialisation of a :class:`ProductBase`."""

    id: int
    tenant_id: int
    base_product: ProductBase
    technical_name: str
    default_measure_unit: str
    commercial_name: Optional[str] = None
    sku: Optional[str] = None
    internal_code: Optional[str] = None
    active: bool = True


@dataclass
class EntryCertificate:
    """Lab certificate attached to a received lot."""

    id: int
    tenant_id: int
    variant_id: int
    internal_lot: str
    supplier_lot: Optional[str] = None
    manufacturing_date: Optional[date] = None
    expiration_date: Optional[date] = None
    status: str = "APPROVED"


@dataclass
class IssuedCertificateDraft:
    tenant_id: int
    customer_id: int
    variant_id: int
    invoice_number: str
    issue_date: date
    sold_quantity: float
    measure_unit: str
    custom_lot: str
    entry_certificate_id: Optional[int] = None


@dataclass
class IssuedCertificate:
    id: int
    tenant_id: int
    customer_id: int
    variant_id: int
    invoice_number: str
    issue_date: date
    sold_quantity: float
    measure_unit: str
    custom_lot: str
    entry_certificate_id: Optional[int] = None


class ResolutionAction(str, Enum):
    FOUND = "found"
    CONFLICT = "conflict"
    CREATE = "create"


@dataclass
class ClientConflict:
    customer: Customer
    similarity: float
    reason: str


@dataclass
class SuggestedClientData:
    """Payload proposed for the automatic creation of a customer."""

    name: str
    tenant_id: int
    country: str
    tax_id: Optional[str] = None
    tax_id_type: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    quality_email: Optional[str] = None
    is_national: bool = True
    internal_code: Optional[str] = None


@dataclass
class ClientResolutionResult:
    action: ResolutionAction
    customer: Optional[Customer] = None
    conflicts: List[ClientConflict] = field(default_factory=list)
    suggested_data: Optional[SuggestedClientData] = None


@dataclass
class ProductMatch:
    variant_id: int
    base_product_id: int
    technical_name: str
    default_measure_unit: str
    category: str
    subcategory: str
    base_technical_name: str
    similarity: float
    sku: Optional[str] = None
    commercial_name: Optional[str] = None
    internal_code: Optional[str] = None
    base_commercial_name: Optional[str] = None
    match_reasons: List[str] = field(default_factory=list)


@dataclass
class CatalogSuggestion:
    create_new: bool = False
    suggested_category: Optional[str] = None
    suggested_subcategory: Optional[str] = None
    suggested_base_name: Optional[str] = None


@dataclass
class ProductMatchResult:
    item: InvoiceLineItem
    matches: List[ProductMatch] = field(default_factory=list)
    has_exact_match: bool = False
    best_match: Optional[ProductMatch] = None
    suggestions: CatalogSuggestion = field(default_factory=CatalogSuggestion)


@dataclass
class MatchingStats:
    total_items: int = 0
    exact_matches: int = 0
    good_matches: int = 0
    no_matches: int = 0
    needs_review: int = 0


@dataclass
class LineDecision:
    """Variant (and optionally lot/quantity) chosen for one invoice line."""

    variant_id: int
    quantity: Optional[float] = None
    entry_certificate_id: Optional[int] = None
    custom_lot: Optional[str] = None


@dataclass
class ImportDecision:
    customer_id: Optional[int] = None
    create_customer: bool = False
    new_customer_data: Optional[SuggestedClientData] = None
    lines: Dict[int, LineDecision] = field(default_factory=dict)


class ImportStatus(str, Enum):
    UPLOADED = "uploaded"
    REVIEWED = "reviewed"
    COMMITTING = "committing"
    COMMITTED = "committed"


@dataclass
class StagedImport:
    id: str
    tenant_id: int
    invoice: Invoice
    status: ImportStatus = ImportStatus.UPLOADED
    client_resolution: Optional[ClientResolutionResult] = None
    product_matches: List[ProductMatchResult] = field(default_factory=list)
    stats: MatchingStats = field(default_factory=MatchingStats)
    decision: Optional[ImportDecision] = None


@dataclass
class ItemCommitError:
    """Failure to issue the certificate of a single invoice line."""

    line_index: int
    item_code: str
    description: str
    message: str


@dataclass
class CommitResult:
    import_id: str
    customer_id: int
    created_customer: bool
    succeeded: int
    certificates: List[IssuedCertificate] = field(default_factory=list)
    errors: List[ItemCommitError] = field(default_factory=list)


__all__ = [
    "Address",
    "InvoiceBuyerIdentity",
    "InvoiceLineItem",
    "InvoiceHeader",
    "Invoice",
    "Customer",
    "ProductCategory",
    "ProductSubcategory",
    "ProductBase",
    "ProductVariant",
    "EntryCertificate",
    "IssuedCertificateDraft",
    "IssuedCertificate",
    "ResolutionAction",
    "ClientConflict",
    "SuggestedClientData",
    "ClientResolutionResult",
    "ProductMatch",
    "CatalogSuggestion",
    "ProductMatchResult",
    "MatchingStats",
    "LineDecision",
    "ImportDecision",
    "ImportStatus",
    "StagedImport",
    "ItemCommitError",
    "CommitResult",
]

from datetime import date

import pytest

from nfe_reconciler.core.models import (
    Address,
    Customer,
    EntryCertificate,
    Invoice,
    InvoiceBuyerIdentity,
    InvoiceHeader,
    InvoiceLineItem,
    ProductBase,
    ProductCategory,
    ProductSubcategory,
    ProductVariant,
)
from nfe_reconciler.core.stores import InMemoryCatalogStore, InMemoryCertificateStore, InMemoryCustomerStore


def build_variants():
    acids = ProductCategory(id=1, name="Ácidos")
    bases = ProductCategory(id=2, name="Bases")
    solvents = ProductCategory(id=3, name="Solventes")
    inorganic = ProductSubcategory(id=1, name="Inorgânicos", category=acids)
    hydroxides = ProductSubcategory(id=2, name="Hidróxidos", category=bases)
    ketones = ProductSubcategory(id=3, name="Cetonas", category=solvents)

    sulfuric = ProductBase(id=1, technical_name="Ácido Sulfúrico", ncm="28070010", subcategory=inorganic)
    hydroxide = ProductBase(id=2, technical_name="Hidróxido de Sódio", ncm="28151200", subcategory=hydroxides)
    acetone = ProductBase(id=3, technical_name="Acetona", ncm="29141100", subcategory=ketones)
    hydrochloric = ProductBase(id=4, technical_name="Ácido Clorídrico", ncm="28061020", subcategory=inorganic)

    return [
        ProductVariant(
            id=1,
            tenant_id=1,
            base_product=sulfuric,
            technical_name="Ácido Sulfúrico 98%",
            commercial_name="Ácido Sulfúrico 98%",
            sku="AS-98",
            internal_code="INT-001",
            default_measure_unit="KG",
        ),
        ProductVariant(
            id=2,
            tenant_id=1,
            base_product=hydroxide,
            technical_name="Hidróxido de Sódio 50%",
            commercial_name="Soda Cáustica Líquida",
            sku="HS-50",
            internal_code="INT-002",
            default_measure_unit="L",
        ),
        ProductVariant(
            id=3,
            tenant_id=1,
            base_product=acetone,
            technical_name="Acetona PA",
            sku="AC-01",
            internal_code="INT-003",
            default_measure_unit="L",
        ),
        ProductVariant(
            id=4,
            tenant_id=1,
            base_product=hydrochloric,
            technical_name="Ácido Clorídrico 33%",
            sku="ACL-33",
            default_measure_unit="L",
            active=False,
        ),
        ProductVariant(
            id=5,
            tenant_id=2,
            base_product=sulfuric,
            technical_name="Ácido Sulfúrico 98%",
            sku="AS-98",
            default_measure_unit="KG",
        ),
    ]


def build_customers():
    return [
        Customer(
            id=1,
            tenant_id=1,
            name="Indústria Química do Brasil S.A.",
            tax_id="11111111000191",
            tax_id_type="CNPJ",
            internal_code="CLI0007",
            country="Brasil",
        ),
        Customer(id=2, tenant_id=1, name="Acme Comercial Ltda", tax_id="12345678000199", tax_id_type="CNPJ", country="Brasil"),
        Customer(id=3, tenant_id=1, name="Acme Filial Norte", tax_id="12345678000270", tax_id_type="CNPJ", country="Brasil"),
        Customer(id=4, tenant_id=2, name="Acme Comercial Ltda", tax_id="12345678000199", tax_id_type="CNPJ", country="Brasil"),
    ]


def make_item(**overrides) -> InvoiceLineItem:
    data = dict(
        code="AS-98",
        description="Ácido Sulfúrico 98%",
        quantity=50.0,
        unit="kg",
        unit_price=4.5,
        total_price=225.0,
        ncm="28070010",
        cfop="5102",
    )
    data.update(overrides)
    return InvoiceLineItem(**data)


def make_buyer(**overrides) -> InvoiceBuyerIdentity:
    data = dict(
        legal_name="Acme Comercial Ltda",
        cnpj="12.345.678/0001-99",
        address=Address(street="Rua das Flores", number="100", city="São Paulo", state="SP", postal_code="01000-000"),
        phone="1133334444",
        email="qualidade@acme.com.br",
    )
    data.update(overrides)
    return InvoiceBuyerIdentity(**data)


def make_invoice(items=None, **buyer_overrides) -> Invoice:
    if items is None:
        items = [
            make_item(),
            make_item(code="HS-50", description="Hidróxido de Sódio 50%", unit="L", ncm="28151200", quantity=20.0),
            make_item(code="AC-01", description="Acetona PA", unit="L", ncm="29141100", quantity=10.0),
        ]
    return Invoice(
        header=InvoiceHeader(number="12345", series="1", issue_date=date(2024, 3, 15)),
        buyer=make_buyer(**buyer_overrides),
        items=list(items),
    )


@pytest.fixture
def catalog():
    return InMemoryCatalogStore(build_variants())


@pytest.fixture
def customers():
    return InMemoryCustomerStore(build_customers())


@pytest.fixture
def certificates(catalog):
    entries = [
        EntryCertificate(id=10, tenant_id=1, variant_id=1, internal_lot="L-2024-01", supplier_lot="SUP-77"),
        EntryCertificate(id=11, tenant_id=1, variant_id=3, internal_lot="L-2024-02"),
    ]
    return InMemoryCertificateStore(catalog, entries)

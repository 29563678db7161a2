from datetime import date

import pytest

from nfe_reconciler.core.models import IssuedCertificateDraft, SuggestedClientData
from nfe_reconciler.core.storage import CatalogLoader, JsonWorkspace

from conftest import build_customers, build_variants


CATALOG_CSV = """Codigo,Nome Tecnico,Nome Comercial,Codigo Interno,Unidade,Produto Base,NCM,Subcategoria,Categoria,Ativo
AS-98,Ácido Sulfúrico 98%,Sulfúrico Industrial,INT-001,KG,Ácido Sulfúrico,28070010,Inorgânicos,Ácidos,sim
AS-50,Ácido Sulfúrico 50%,,INT-002,KG,Ácido Sulfúrico,28070010,Inorgânicos,Ácidos,sim
AC-01,Acetona PA,,,L,Acetona,29141100,Cetonas,Solventes,não
,,,,,,,,,
"""


def test_catalog_loader_reads_csv(tmp_path):
    path = tmp_path / "catalogo.csv"
    path.write_text(CATALOG_CSV, encoding="utf-8")

    variants = CatalogLoader(path).to_variants()
    assert [variant.sku for variant in variants] == ["AS-98", "AS-50", "AC-01"]

    sulfuric, diluted, acetone = variants
    assert sulfuric.id == 1
    assert sulfuric.tenant_id == 1
    assert sulfuric.commercial_name == "Sulfúrico Industrial"
    assert diluted.commercial_name is None
    assert sulfuric.base_product is diluted.base_product
    assert sulfuric.base_product.ncm == "28070010"
    assert sulfuric.base_product.subcategory.category.name == "Ácidos"
    assert acetone.active is False
    assert acetone.internal_code is None


def test_rows_to_variants_uses_defaults():
    loader = CatalogLoader(default_tenant_id=3)
    variants = loader.rows_to_variants([{"technical_name": "Produto Avulso", "id": "17"}])
    assert len(variants) == 1
    variant = variants[0]
    assert variant.id == 17
    assert variant.tenant_id == 3
    assert variant.base_product.technical_name == "Produto Avulso"
    assert variant.base_product.subcategory.category.name == "Sem categoria"
    assert variant.active is True


def test_workspace_persists_stores(tmp_path):
    path = tmp_path / "workspace.json"
    workspace = JsonWorkspace(path)
    assert workspace.customers.customers == []

    workspace.catalog.refresh(build_variants())
    for customer in build_customers():
        workspace.customers.insert(
            SuggestedClientData(
                name=customer.name,
                tenant_id=customer.tenant_id,
                country="Brasil",
                tax_id=customer.tax_id,
                internal_code=customer.internal_code,
            )
        )
    workspace.certificates.create_issued_certificate(
        IssuedCertificateDraft(
            tenant_id=1,
            customer_id=1,
            variant_id=1,
            invoice_number="12345",
            issue_date=date(2024, 3, 15),
            sold_quantity=10,
            measure_unit="KG",
            custom_lot="12345",
        )
    )
    workspace.save()

    reloaded = JsonWorkspace(path)
    assert len(reloaded.customers.customers) == 4
    assert reloaded.customers.find_by_tax_id(1, "12345678000199").name == "Acme Comercial Ltda"
    assert {variant.id for variant in reloaded.catalog.list_active_variants(1)} == {1, 2, 3}
    assert reloaded.catalog.get_variant(1, 2).base_product.subcategory.name == "Hidróxidos"
    issued = reloaded.certificates.issued
    assert len(issued) == 1
    assert issued[0].issue_date == date(2024, 3, 15)

    created = reloaded.customers.insert(SuggestedClientData(name="Novo", tenant_id=1, country="Brasil"))
    assert created.id == 5


def test_workspace_reloads_catalog_file(tmp_path):
    catalog_path = tmp_path / "catalogo.csv"
    catalog_path.write_text(CATALOG_CSV, encoding="utf-8")
    workspace = JsonWorkspace(tmp_path / "workspace.json", catalog_file=catalog_path)
    assert len(workspace.catalog.variants) == 3

    catalog_path.write_text(CATALOG_CSV.replace("AS-50", "AS-70"), encoding="utf-8")
    assert workspace.reload_catalog() == 3
    assert {variant.sku for variant in workspace.catalog.variants} == {"AS-98", "AS-70", "AC-01"}


def test_rows_to_variants_rejects_duplicate_ids():
    rows = [{"technical_name": "Produto sem ID"}, {"technical_name": "Produto com ID", "id": "1"}]
    with pytest.raises(ValueError, match="duplicado"):
        CatalogLoader().rows_to_variants(rows)

"""File backed stores: a JSON workspace and the catalogue spreadsheet loader."""

from __future__ import annotations

import logging
from dataclasses import asdict
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import pandas as pd

from .models import (
    Customer,
    EntryCertificate,
    IssuedCertificate,
    ProductBase,
    ProductCategory,
    ProductSubcategory,
    ProductVariant,
)
from .stores import InMemoryCatalogStore, InMemoryCertificateStore, InMemoryCustomerStore
from .utils import dump_json, load_json, optional_text, parse_date, safe_float


LOGGER = logging.getLogger(__name__)


def _sanitise_column(name: str) -> str:
    return "".join(char.lower() if char.isalnum() else "_" for char in name).strip("_")


def _as_bool(value, default: bool = True) -> bool:
    text = optional_text(value)
    if text is None:
        return default
    return text.lower() not in {"0", "false", "nao", "não", "n", "inativo", "no"}


def _as_int(value) -> Optional[int]:
    text = optional_text(value)
    if text is None:
        return None
    try:
        return int(float(text))
    except ValueError:
        return None


class CatalogLoader:
    """Builds :class:`ProductVariant` graphs from flat catalogue rows.

    Each row describes one variant together with its base product,
    subcategory and category.  Rows come either from a spreadsheet (xlsx or
    csv) or from the ``catalog`` section of the JSON workspace.
    """

    COLUMN_MAPPING = {
        "id": "id",
        "tenant": "tenant_id",
        "tenant_id": "tenant_id",
        "sku": "sku",
        "codigo": "sku",
        "nome_tecnico": "technical_name",
        "technical_name": "technical_name",
        "descricao": "technical_name",
        "nome_comercial": "commercial_name",
        "commercial_name": "commercial_name",
        "codigo_interno": "internal_code",
        "internal_code": "internal_code",
        "unidade": "unit",
        "unid": "unit",
        "unit": "unit",
        "ativo": "active",
        "active": "active",
        "produto_base": "base_technical_name",
        "base_technical_name": "base_technical_name",
        "produto_base_comercial": "base_commercial_name",
        "base_commercial_name": "base_commercial_name",
        "ncm": "ncm",
        "subcategoria": "subcategory",
        "subcategory": "subcategory",
        "categoria": "category",
        "category": "category",
    }

    def __init__(self, path: Optional[Path] = None, sheet_name=0, default_tenant_id: int = 1) -> None:
        self.path = Path(path) if path else None
        self.sheet_name = sheet_name
        self.default_tenant_id = default_tenant_id

    def load_dataframe(self) -> pd.DataFrame:
        if self.path is None:
            raise ValueError("No catalogue file configured")
        if self.path.suffix.lower() == ".csv":
            df = pd.read_csv(self.path, dtype=str)
        else:
            df = pd.read_excel(self.path, sheet_name=self.sheet_name, engine="openpyxl", dtype=str)
        df.columns = [_sanitise_column(str(col)) for col in df.columns]
        return df

    def to_variants(self) -> List[ProductVariant]:
        df = self.load_dataframe()
        variants = self.rows_to_variants(row.to_dict() for _, row in df.iterrows())
        LOGGER.info("Loaded %s product variants from %s", len(variants), self.path)
        return variants

    def rows_to_variants(self, rows: Iterable[Mapping]) -> List[ProductVariant]:
        categories: Dict[str, ProductCategory] = {}
        subcategories: Dict[Tuple[str, str], ProductSubcategory] = {}
        bases: Dict[Tuple[str, str, str], ProductBase] = {}
        variants: List[ProductVariant] = []
        seen_ids: Dict[int, int] = {}

        for position, raw in enumerate(rows, start=1):
            data = {self.COLUMN_MAPPING.get(_sanitise_column(str(key)), _sanitise_column(str(key))): value for key, value in raw.items()}

            technical_name = optional_text(data.get("technical_name"))
            if not technical_name:
                LOGGER.debug("Skipping catalogue row %s without technical name", position)
                continue

            category_name = optional_text(data.get("category")) or "Sem categoria"
            subcategory_name = optional_text(data.get("subcategory")) or category_name
            base_name = optional_text(data.get("base_technical_name")) or technical_name

            category = categories.get(category_name)
            if category is None:
                category = categories[category_name] = ProductCategory(id=len(categories) + 1, name=category_name)

            sub_key = (category_name, subcategory_name)
            subcategory = subcategories.get(sub_key)
            if subcategory is None:
                subcategory = subcategories[sub_key] = ProductSubcategory(
                    id=len(subcategories) + 1, name=subcategory_name, category=category
                )

            base_key = (category_name, subcategory_name, base_name)
            base = bases.get(base_key)
            if base is None:
                base = bases[base_key] = ProductBase(
                    id=len(bases) + 1,
                    technical_name=base_name,
                    commercial_name=optional_text(data.get("base_commercial_name")),
                    ncm=optional_text(data.get("ncm")),
                    subcategory=subcategory,
                )

            variant_id = _as_int(data.get("id")) or position
            if variant_id in seen_ids:
                raise ValueError(
                    f"ID de produto duplicado no catálogo: {variant_id} (linhas {seen_ids[variant_id]} e {position})"
                )
            seen_ids[variant_id] = position

            variants.append(
                ProductVariant(
                    id=variant_id,
                    tenant_id=_as_int(data.get("tenant_id")) or self.default_tenant_id,
                    base_product=base,
                    technical_name=technical_name,
                    commercial_name=optional_text(data.get("commercial_name")),
                    sku=optional_text(data.get("sku")),
                    internal_code=optional_text(data.get("internal_code")),
                    default_measure_unit=optional_text(data.get("unit")) or "",
                    active=_as_bool(data.get("active")),
                )
            )
        return variants


def variant_to_row(variant: ProductVariant) -> dict:
    base = variant.base_product
    return {
        "id": variant.id,
        "tenant_id": variant.tenant_id,
        "sku": variant.sku,
        "technical_name": variant.technical_name,
        "commercial_name": variant.commercial_name,
        "internal_code": variant.internal_code,
        "unit": variant.default_measure_unit,
        "active": variant.active,
        "base_technical_name": base.technical_name,
        "base_commercial_name": base.commercial_name,
        "ncm": base.ncm,
        "subcategory": base.subcategory.name,
        "category": base.subcategory.category.name,
    }


class JsonWorkspace:
    """Customers, catalogue and certificates persisted in a single JSON file."""

    def __init__(self, path: Path, *, catalog_file: Optional[Path] = None, default_tenant_id: int = 1) -> None:
        self.path = Path(path)
        self.catalog_file = Path(catalog_file) if catalog_file else None
        self.default_tenant_id = default_tenant_id

        data = load_json(self.path) or {}
        self.customers = InMemoryCustomerStore(Customer(**entry) for entry in data.get("customers", []))
        self.catalog = InMemoryCatalogStore(self._load_catalog(data.get("catalog", [])))
        self.certificates = InMemoryCertificateStore(
            self.catalog,
            (self._entry_from_dict(entry) for entry in data.get("entry_certificates", [])),
        )
        self.certificates.restore(self._issued_from_dict(entry) for entry in data.get("issued_certificates", []))
        LOGGER.info(
            "Workspace %s: %s customers, %s variants, %s issued certificates",
            self.path,
            len(self.customers.customers),
            len(self.catalog.variants),
            len(self.certificates.issued),
        )

    def _load_catalog(self, rows: List[dict]) -> List[ProductVariant]:
        if self.catalog_file is not None:
            return CatalogLoader(self.catalog_file, default_tenant_id=self.default_tenant_id).to_variants()
        return CatalogLoader(default_tenant_id=self.default_tenant_id).rows_to_variants(rows)

    def reload_catalog(self) -> int:
        if self.catalog_file is None:
            data = load_json(self.path) or {}
            variants = self._load_catalog(data.get("catalog", []))
        else:
            variants = self._load_catalog([])
        self.catalog.refresh(variants)
        return len(variants)

    @staticmethod
    def _entry_from_dict(entry: dict) -> EntryCertificate:
        data = dict(entry)
        data["manufacturing_date"] = parse_date(data.get("manufacturing_date"))
        data["expiration_date"] = parse_date(data.get("expiration_date"))
        return EntryCertificate(**data)

    @staticmethod
    def _issued_from_dict(entry: dict) -> IssuedCertificate:
        data = dict(entry)
        data["issue_date"] = parse_date(data.get("issue_date"))
        data["sold_quantity"] = safe_float(data.get("sold_quantity"))
        return IssuedCertificate(**data)

    def save(self) -> None:
        payload = {
            "customers": [asdict(customer) for customer in self.customers.customers],
            "catalog": [variant_to_row(variant) for variant in self.catalog.variants],
            "entry_certificates": [asdict(entry) for entry in self.certificates.entry_certificates],
            "issued_certificates": [asdict(certificate) for certificate in self.certificates.issued],
        }
        dump_json(self.path, payload)
        LOGGER.debug("Workspace saved to %s", self.path)


__all__ = ["CatalogLoader", "JsonWorkspace", "variant_to_row"]

"""Conversion between plain dicts (JSON payloads) and the domain dataclasses.

Invoices arrive already parsed.  Keys may use the field names of the
dataclasses or the Portuguese names of the NF-e layout (``destinatario``,
``itens``, ``descricao``...); both are accepted.
"""

from __future__ import annotations

from dataclasses import fields, is_dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .models import (
    Address,
    ImportDecision,
    Invoice,
    InvoiceBuyerIdentity,
    InvoiceHeader,
    InvoiceLineItem,
    LineDecision,
    SuggestedClientData,
)
from .utils import optional_text, parse_date, safe_float


HEADER_KEYS = {
    "numero": "number",
    "serie": "series",
    "dataEmissao": "issue_date",
    "chaveAcesso": "access_key",
    "naturezaOperacao": "operation_nature",
}

BUYER_KEYS = {
    "razaoSocial": "legal_name",
    "nome": "legal_name",
    "endereco": "address",
    "telefone": "phone",
    "emailQualidade": "email",
}

ADDRESS_KEYS = {
    "logradouro": "street",
    "numero": "number",
    "complemento": "complement",
    "bairro": "district",
    "cidade": "city",
    "municipio": "city",
    "uf": "state",
    "cep": "postal_code",
}

ITEM_KEYS = {
    "codigo": "code",
    "descricao": "description",
    "quantidade": "quantity",
    "unidade": "unit",
    "valorUnitario": "unit_price",
    "valorTotal": "total_price",
    "observacao": "note",
}

INVOICE_KEYS = {
    "invoice": "header",
    "nota": "header",
    "destinatario": "buyer",
    "itens": "items",
}


def _translate(data: Mapping[str, Any], aliases: Mapping[str, str]) -> Dict[str, Any]:
    return {aliases.get(key, key): value for key, value in (data or {}).items()}


def address_from_dict(data: Any) -> Address:
    if isinstance(data, str):
        return Address(street=data)
    values = _translate(data or {}, ADDRESS_KEYS)
    return Address(**{field.name: optional_text(values.get(field.name)) for field in fields(Address)})


def buyer_from_dict(data: Mapping[str, Any]) -> InvoiceBuyerIdentity:
    values = _translate(data, BUYER_KEYS)
    legal_name = optional_text(values.get("legal_name"))
    if not legal_name:
        raise ValueError("Destinatário sem razão social")
    return InvoiceBuyerIdentity(
        legal_name=legal_name,
        cnpj=optional_text(values.get("cnpj")),
        cpf=optional_text(values.get("cpf")),
        address=address_from_dict(values.get("address")),
        phone=optional_text(values.get("phone")),
        email=optional_text(values.get("email")),
    )


def item_from_dict(data: Mapping[str, Any]) -> InvoiceLineItem:
    values = _translate(data, ITEM_KEYS)
    quantity = safe_float(values.get("quantity"))
    unit_price = safe_float(values.get("unit_price"))
    return InvoiceLineItem(
        code=optional_text(values.get("code")) or "",
        description=optional_text(values.get("description")) or "",
        quantity=quantity,
        unit=optional_text(values.get("unit")),
        unit_price=unit_price,
        total_price=safe_float(values.get("total_price"), default=quantity * unit_price),
        ncm=optional_text(values.get("ncm")),
        cfop=optional_text(values.get("cfop")),
        note=optional_text(values.get("note")),
    )


def invoice_from_dict(data: Mapping[str, Any]) -> Invoice:
    values = _translate(data, INVOICE_KEYS)
    header_values = _translate(values.get("header") or {}, HEADER_KEYS)
    number = optional_text(header_values.get("number"))
    if not number:
        raise ValueError("NF-e sem número")
    header = InvoiceHeader(
        number=number,
        series=optional_text(header_values.get("series")),
        issue_date=parse_date(header_values.get("issue_date")),
        access_key=optional_text(header_values.get("access_key")),
        operation_nature=optional_text(header_values.get("operation_nature")),
    )
    items = [item_from_dict(item) for item in values.get("items") or []]
    return Invoice(header=header, buyer=buyer_from_dict(values.get("buyer") or {}), items=items)


def decision_from_dict(data: Mapping[str, Any]) -> ImportDecision:
    """Build an :class:`ImportDecision`; line keys are zero based item indexes."""

    new_customer: Optional[SuggestedClientData] = None
    raw_customer = data.get("new_customer_data")
    if raw_customer:
        new_customer = SuggestedClientData(**raw_customer)

    lines: Dict[int, LineDecision] = {}
    for key, value in (data.get("lines") or {}).items():
        if isinstance(value, Mapping):
            if value.get("variant_id") is None:
                raise ValueError(f"Item {int(key) + 1} sem produto selecionado")
            line = LineDecision(
                variant_id=int(value["variant_id"]),
                quantity=safe_float(value["quantity"]) if value.get("quantity") is not None else None,
                entry_certificate_id=int(value["entry_certificate_id"]) if value.get("entry_certificate_id") is not None else None,
                custom_lot=optional_text(value.get("custom_lot")),
            )
        else:
            line = LineDecision(variant_id=int(value))
        lines[int(key)] = line

    customer_id = data.get("customer_id")
    return ImportDecision(
        customer_id=int(customer_id) if customer_id is not None else None,
        create_customer=bool(data.get("create_customer", False)),
        new_customer_data=new_customer,
        lines=lines,
    )


def to_jsonable(value: Any) -> Any:
    """Recursively convert dataclasses, enums and dates to JSON friendly values."""

    if is_dataclass(value) and not isinstance(value, type):
        return {field.name: to_jsonable(getattr(value, field.name)) for field in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


__all__ = [
    "address_from_dict",
    "buyer_from_dict",
    "item_from_dict",
    "invoice_from_dict",
    "decision_from_dict",
    "to_jsonable",
]

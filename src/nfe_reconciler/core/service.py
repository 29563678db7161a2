"""Wiring of the reconciliation pipeline on top of the file backed stores."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from ..config import Settings
from .client_resolver import ClientResolver
from .errors import ReconciliationError
from .item_matcher import ProductItemMatcher
from .models import CommitResult, ImportDecision, ImportStatus, StagedImport
from .pipeline import ImportSessionRegistry, ReconciliationPipeline
from .preferences import MappingPreferences
from .serialization import decision_from_dict, invoice_from_dict, item_from_dict
from .storage import JsonWorkspace


LOGGER = logging.getLogger(__name__)


class UnknownImportError(ReconciliationError):
    def __init__(self, import_id: str) -> None:
        self.import_id = import_id
        super().__init__(f"Importação {import_id} não encontrada")


class ReconciliationService:
    """Coordinates the workspace, the mapping preferences and the pipeline."""

    def __init__(self, settings: Settings, workspace: Optional[JsonWorkspace] = None) -> None:
        self.settings = settings
        self.workspace = workspace or JsonWorkspace(
            settings.paths.workspace_file,
            catalog_file=settings.paths.catalog_file,
            default_tenant_id=settings.tenant_id,
        )
        self.preferences = MappingPreferences(settings.paths.mapping_file)
        self.client_resolver = ClientResolver(self.workspace.customers, settings.clients)
        self.item_matcher = ProductItemMatcher(self.workspace.catalog, self.preferences, settings.matching)
        self.pipeline = ReconciliationPipeline(
            self.client_resolver,
            self.item_matcher,
            self.workspace.certificates,
            remember_mappings=settings.remember_mappings,
            log_folder=settings.paths.log_folder,
        )
        self.registry = ImportSessionRegistry()

    def stage(self, invoice_data: Mapping[str, Any], tenant_id: Optional[int] = None) -> StagedImport:
        invoice = invoice_from_dict(invoice_data)
        staged = self.pipeline.stage(invoice, tenant_id if tenant_id is not None else self.settings.tenant_id)
        return self.registry.add(staged)

    def get(self, import_id: str) -> StagedImport:
        staged = self.registry.get(import_id)
        if staged is None:
            raise UnknownImportError(import_id)
        return staged

    def decide(self, import_id: str, decision_data: Optional[Mapping[str, Any]] = None) -> StagedImport:
        """Record the reviewer's decision; without data the automatic pre-selection is used."""

        staged = self.get(import_id)
        if decision_data is None:
            decision = self.pipeline.default_decision(staged)
        else:
            decision = self._merge_with_defaults(staged, decision_from_dict(decision_data))
        self.pipeline.record_decision(staged, decision)
        return staged

    def commit(self, import_id: str) -> CommitResult:
        staged = self.get(import_id)
        try:
            return self.pipeline.commit(staged)
        finally:
            # reviewed means nothing was written
            if staged.status is not ImportStatus.REVIEWED:
                self.workspace.save()
            if staged.status is ImportStatus.COMMITTED:
                self.registry.discard(import_id)

    def save_mapping(self, tenant_id: int, item_data: Mapping[str, Any], variant_id: int) -> None:
        item = item_from_dict(item_data)
        if self.workspace.catalog.get_variant(tenant_id, variant_id) is None:
            raise ReconciliationError(f"Produto {variant_id} não encontrado")
        self.item_matcher.save_mapping_preference(item, variant_id, tenant_id, manual=True)

    def reload_catalog(self) -> int:
        count = self.workspace.reload_catalog()
        LOGGER.info("Catalogue reloaded: %s variants", count)
        return count

    def _merge_with_defaults(self, staged: StagedImport, decision: ImportDecision) -> ImportDecision:
        defaults = self.pipeline.default_decision(staged)
        lines = dict(defaults.lines)
        for index, line in decision.lines.items():
            if line.entry_certificate_id is None and not line.custom_lot:
                line.entry_certificate_id = self.pipeline.first_expiring_lot(staged.tenant_id, line.variant_id)
            lines[index] = line
        decision.lines = lines
        if decision.customer_id is None and not decision.create_customer:
            decision.customer_id = defaults.customer_id
            decision.create_customer = defaults.create_customer
            decision.new_customer_data = defaults.new_customer_data
        return decision


__all__ = ["ReconciliationService", "UnknownImportError"]

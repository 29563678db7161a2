"""High level orchestration of an NF-e import: staging, review and commit."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .client_resolver import ClientResolver
from .errors import ClientCreationError, ClientValidationError, IncompleteDecisionError, InvalidTransitionError
from .item_matcher import ProductItemMatcher
from .models import (
    CommitResult,
    ImportDecision,
    ImportStatus,
    Invoice,
    InvoiceLineItem,
    IssuedCertificateDraft,
    ItemCommitError,
    LineDecision,
    ResolutionAction,
    StagedImport,
)
from .stores import CertificateWriter
from .utils import dump_json


LOGGER = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    ImportStatus.UPLOADED: {ImportStatus.REVIEWED},
    ImportStatus.REVIEWED: {ImportStatus.COMMITTING},
    # back to review only when the customer could not be created (nothing written yet)
    ImportStatus.COMMITTING: {ImportStatus.COMMITTED, ImportStatus.REVIEWED},
    ImportStatus.COMMITTED: set(),
}


def transition(staged: StagedImport, target: ImportStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[staged.status]:
        raise InvalidTransitionError(staged.status.value, target.value)
    LOGGER.debug("Import %s: %s -> %s", staged.id, staged.status.value, target.value)
    staged.status = target


class ReconciliationPipeline:
    """Coordinates client resolution, product matching and certificate issuing."""

    def __init__(
        self,
        client_resolver: ClientResolver,
        item_matcher: ProductItemMatcher,
        certificates: CertificateWriter,
        *,
        remember_mappings: bool = True,
        log_folder: Optional[Path] = None,
    ) -> None:
        self.client_resolver = client_resolver
        self.item_matcher = item_matcher
        self.certificates = certificates
        self.remember_mappings = remember_mappings
        self.log_folder = Path(log_folder) if log_folder else None

    def stage(self, invoice: Invoice, tenant_id: int) -> StagedImport:
        """Resolve the buyer and match every line, producing an import awaiting review.

        Resolution errors propagate: the invoice is not staged at all.
        """

        staged = StagedImport(id=uuid.uuid4().hex, tenant_id=tenant_id, invoice=invoice)
        LOGGER.info("Staging NF-e %s (%s items) for tenant %s", invoice.header.number, len(invoice.items), tenant_id)

        staged.client_resolution = self.client_resolver.resolve_client(invoice.buyer, tenant_id)
        staged.product_matches = self.item_matcher.bulk_match(invoice.items, tenant_id)
        staged.stats = self.item_matcher.get_matching_stats(staged.product_matches)
        transition(staged, ImportStatus.REVIEWED)

        stats = staged.stats
        LOGGER.info(
            "Import %s staged: client=%s exact=%s good=%s review=%s none=%s",
            staged.id,
            staged.client_resolution.action.value,
            stats.exact_matches,
            stats.good_matches,
            stats.needs_review,
            stats.no_matches,
        )
        return staged

    def default_decision(self, staged: StagedImport) -> ImportDecision:
        """Pre-select what needs no human judgement.

        A found customer is selected (or the creation of a new one when the
        resolver proposed it), and every exact match is mapped to its variant
        with the first approved lot to expire.
        """

        decision = ImportDecision()
        resolution = staged.client_resolution
        if resolution is not None:
            if resolution.action is ResolutionAction.FOUND and resolution.customer:
                decision.customer_id = resolution.customer.id
            elif resolution.action is ResolutionAction.CREATE:
                decision.create_customer = True
                decision.new_customer_data = resolution.suggested_data

        for index, result in enumerate(staged.product_matches):
            if result.has_exact_match and result.best_match:
                variant_id = result.best_match.variant_id
                decision.lines[index] = LineDecision(
                    variant_id=variant_id,
                    entry_certificate_id=self.first_expiring_lot(staged.tenant_id, variant_id),
                )
        return decision

    def first_expiring_lot(self, tenant_id: int, variant_id: int) -> Optional[int]:
        lots = self.certificates.available_lots(tenant_id, variant_id)
        return lots[0].id if lots else None

    def record_decision(self, staged: StagedImport, decision: ImportDecision) -> None:
        if staged.status is not ImportStatus.REVIEWED:
            raise InvalidTransitionError(staged.status.value, ImportStatus.REVIEWED.value)
        unknown = [index for index in decision.lines if not 0 <= index < len(staged.invoice.items)]
        if unknown:
            raise IncompleteDecisionError(message=f"Itens inexistentes na NF-e: {', '.join(str(i + 1) for i in sorted(unknown))}")
        staged.decision = decision
        LOGGER.debug("Import %s: decision recorded for %s lines", staged.id, len(decision.lines))

    def validate_decision(self, staged: StagedImport) -> ImportDecision:
        decision = staged.decision
        if decision is None:
            raise IncompleteDecisionError(range(len(staged.invoice.items)), missing_customer=True)

        missing_customer = False
        if decision.create_customer:
            if decision.new_customer_data is None and (
                staged.client_resolution is None or staged.client_resolution.suggested_data is None
            ):
                missing_customer = True
        elif decision.customer_id is None:
            missing_customer = True

        missing_lines = [index for index in range(len(staged.invoice.items)) if index not in decision.lines]
        if missing_customer or missing_lines:
            raise IncompleteDecisionError(missing_lines, missing_customer=missing_customer)

        if not decision.create_customer:
            customer = self.client_resolver.customers.get(staged.tenant_id, int(decision.customer_id))
            if customer is None:
                LOGGER.warning("Import %s: customer %s not found for tenant %s", staged.id, decision.customer_id, staged.tenant_id)
                raise IncompleteDecisionError(
                    missing_customer=True,
                    message=f"Decisão incompleta: cliente {decision.customer_id} não encontrado",
                )
        return decision

    def commit(self, staged: StagedImport) -> CommitResult:
        """Create the customer (when requested) and one issued certificate per line.

        Lines are written one by one; a failing line is reported in
        ``CommitResult.errors`` and never undoes the lines already written.
        """

        if staged.status is not ImportStatus.REVIEWED:
            raise InvalidTransitionError(staged.status.value, ImportStatus.COMMITTING.value)
        decision = self.validate_decision(staged)
        transition(staged, ImportStatus.COMMITTING)

        created_customer = False
        try:
            customer_id = self._resolve_customer_id(staged, decision)
            created_customer = decision.create_customer
        except (ClientValidationError, ClientCreationError):
            transition(staged, ImportStatus.REVIEWED)
            raise

        header = staged.invoice.header
        result = CommitResult(import_id=staged.id, customer_id=customer_id, created_customer=created_customer, succeeded=0)
        for index, item in enumerate(staged.invoice.items):
            line = decision.lines[index]
            try:
                draft = self._build_draft(staged, customer_id, index, line)
                certificate = self.certificates.create_issued_certificate(draft)
            except Exception as exc:
                LOGGER.warning("Import %s: line %s (%s) failed: %s", staged.id, index + 1, item.code, exc)
                result.errors.append(
                    ItemCommitError(line_index=index, item_code=item.code, description=item.description, message=str(exc))
                )
                continue

            result.certificates.append(certificate)
            result.succeeded += 1
            if self.remember_mappings:
                self._remember_mapping(staged, item, line.variant_id)

        transition(staged, ImportStatus.COMMITTED)
        try:
            self._persist_summary(staged, result, header.number)
        except OSError:
            LOGGER.exception("Import %s: failed to write the run summary to %s", staged.id, self.log_folder)
        return result

    def _remember_mapping(self, staged: StagedImport, item: InvoiceLineItem, variant_id: int) -> None:
        try:
            self.item_matcher.save_mapping_preference(item, variant_id, staged.tenant_id, manual=True)
        except OSError:
            LOGGER.exception("Import %s: mapping %s -> %s not persisted", staged.id, item.code, variant_id)

    def _resolve_customer_id(self, staged: StagedImport, decision: ImportDecision) -> int:
        if not decision.create_customer:
            return int(decision.customer_id)
        data = decision.new_customer_data or staged.client_resolution.suggested_data
        if data.tenant_id != staged.tenant_id:
            data = replace(data, tenant_id=staged.tenant_id)
        customer_id, _ = self.client_resolver.auto_create_client(data)
        return customer_id

    def _build_draft(self, staged: StagedImport, customer_id: int, index: int, line: LineDecision) -> IssuedCertificateDraft:
        item = staged.invoice.items[index]
        header = staged.invoice.header

        custom_lot = line.custom_lot
        if not custom_lot and line.entry_certificate_id is not None:
            entry = self.certificates.get_entry_certificate(staged.tenant_id, line.entry_certificate_id)
            if entry is not None:
                custom_lot = entry.internal_lot

        return IssuedCertificateDraft(
            tenant_id=staged.tenant_id,
            customer_id=customer_id,
            variant_id=line.variant_id,
            entry_certificate_id=line.entry_certificate_id,
            invoice_number=header.number,
            issue_date=header.issue_date or date.today(),
            sold_quantity=line.quantity if line.quantity is not None else item.quantity,
            measure_unit=item.unit or "",
            custom_lot=custom_lot or header.number,
        )

    def _persist_summary(self, staged: StagedImport, result: CommitResult, invoice_number: str) -> None:
        LOGGER.info(
            "Import %s (NF-e %s): %s certificates issued, %s errors",
            staged.id,
            invoice_number,
            result.succeeded,
            len(result.errors),
        )
        if self.log_folder is None:
            return
        payload = {
            "import_id": staged.id,
            "tenant_id": staged.tenant_id,
            "committed_at": datetime.now(timezone.utc).isoformat(),
            "invoice_number": invoice_number,
            "customer_id": result.customer_id,
            "created_customer": result.created_customer,
            "items": len(staged.invoice.items),
            "succeeded": result.succeeded,
            "certificate_ids": [certificate.id for certificate in result.certificates],
            "errors": [
                {"line": error.line_index + 1, "code": error.item_code, "message": error.message}
                for error in result.errors
            ],
        }
        dump_json(self.log_folder / f"import_{staged.id}.json", payload)


class ImportSessionRegistry:
    """Keeps staged imports between the review and the commit requests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._imports: Dict[str, StagedImport] = {}

    def add(self, staged: StagedImport) -> StagedImport:
        with self._lock:
            self._imports[staged.id] = staged
        return staged

    def get(self, import_id: str) -> Optional[StagedImport]:
        with self._lock:
            return self._imports.get(import_id)

    def discard(self, import_id: str) -> None:
        with self._lock:
            self._imports.pop(import_id, None)

    def list(self) -> List[StagedImport]:
        with self._lock:
            return list(self._imports.values())


__all__ = ["ReconciliationPipeline", "ImportSessionRegistry", "transition", "ALLOWED_TRANSITIONS"]

import json
from datetime import date

import pytest

from nfe_reconciler.core.client_resolver import ClientResolver
from nfe_reconciler.core.errors import (
    ClientCreationError,
    ClientResolutionError,
    ClientValidationError,
    IncompleteDecisionError,
    InvalidTransitionError,
)
from nfe_reconciler.core.item_matcher import ProductItemMatcher
from nfe_reconciler.core.models import (
    EntryCertificate,
    ImportDecision,
    ImportStatus,
    LineDecision,
    ResolutionAction,
    StagedImport,
    SuggestedClientData,
)
from nfe_reconciler.core.pipeline import ImportSessionRegistry, ReconciliationPipeline, transition
from nfe_reconciler.core.preferences import MappingPreferences
from nfe_reconciler.core.stores import InMemoryCustomerStore

from conftest import make_invoice


class BrokenCustomerStore(InMemoryCustomerStore):
    def find_by_tax_id(self, tenant_id, tax_id):
        raise RuntimeError("database unavailable")


def build_pipeline(customers, catalog, certificates, tmp_path, remember_mappings=True):
    preferences = MappingPreferences(tmp_path / "mapeamentos.json")
    pipeline = ReconciliationPipeline(
        ClientResolver(customers),
        ProductItemMatcher(catalog, preferences),
        certificates,
        remember_mappings=remember_mappings,
        log_folder=tmp_path / "logs",
    )
    return pipeline, preferences


def full_decision() -> ImportDecision:
    return ImportDecision(customer_id=2, lines={0: LineDecision(1), 1: LineDecision(2), 2: LineDecision(3)})


def test_stage_resolves_client_and_matches_items(customers, catalog, certificates, tmp_path):
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)

    assert staged.status is ImportStatus.REVIEWED
    assert staged.client_resolution.action is ResolutionAction.FOUND
    assert staged.client_resolution.customer.id == 2
    assert [result.best_match.variant_id for result in staged.product_matches] == [1, 2, 3]
    assert staged.stats.total_items == 3
    assert staged.stats.exact_matches == 1
    assert staged.stats.good_matches == 2


def test_stage_propagates_client_lookup_failures(catalog, certificates, tmp_path):
    pipeline, _ = build_pipeline(BrokenCustomerStore(), catalog, certificates, tmp_path)
    with pytest.raises(ClientResolutionError):
        pipeline.stage(make_invoice(), tenant_id=1)


def test_default_decision_preselects_found_customer_and_exact_matches(customers, catalog, certificates, tmp_path):
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)

    decision = pipeline.default_decision(staged)
    assert decision.customer_id == 2
    assert decision.create_customer is False
    assert list(decision.lines) == [0]
    assert decision.lines[0].variant_id == 1


def test_commit_rejects_incomplete_decision(customers, catalog, certificates, tmp_path):
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)
    pipeline.record_decision(staged, ImportDecision(customer_id=2, lines={0: LineDecision(1), 1: LineDecision(2)}))

    with pytest.raises(IncompleteDecisionError) as excinfo:
        pipeline.commit(staged)
    assert excinfo.value.missing_lines == [2]
    assert excinfo.value.missing_customer is False
    assert certificates.issued == []
    assert staged.status is ImportStatus.REVIEWED


def test_commit_without_decision_lists_everything_missing(customers, catalog, certificates, tmp_path):
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)
    with pytest.raises(IncompleteDecisionError) as excinfo:
        pipeline.commit(staged)
    assert excinfo.value.missing_lines == [0, 1, 2]
    assert excinfo.value.missing_customer is True


def test_commit_requires_a_customer(customers, catalog, certificates, tmp_path):
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)
    decision = full_decision()
    decision.customer_id = None
    pipeline.record_decision(staged, decision)
    with pytest.raises(IncompleteDecisionError) as excinfo:
        pipeline.commit(staged)
    assert excinfo.value.missing_customer is True
    assert excinfo.value.missing_lines == []


def test_record_decision_rejects_unknown_lines(customers, catalog, certificates, tmp_path):
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)
    with pytest.raises(IncompleteDecisionError):
        pipeline.record_decision(staged, ImportDecision(customer_id=2, lines={7: LineDecision(1)}))


def test_commit_issues_one_certificate_per_line(customers, catalog, certificates, tmp_path):
    pipeline, preferences = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)
    pipeline.record_decision(staged, full_decision())

    result = pipeline.commit(staged)
    assert staged.status is ImportStatus.COMMITTED
    assert result.succeeded == 3
    assert result.errors == []
    assert result.customer_id == 2
    assert result.created_customer is False
    assert [certificate.variant_id for certificate in certificates.issued] == [1, 2, 3]

    first = result.certificates[0]
    assert first.invoice_number == "12345"
    assert first.issue_date == date(2024, 3, 15)
    assert first.sold_quantity == 50.0
    assert first.measure_unit == "kg"
    assert first.custom_lot == "12345"

    assert preferences.lookup(1, "AS-98") == 1
    assert preferences.lookup(1, "HS-50") == 2


def test_commit_keeps_going_after_a_failing_line(customers, catalog, certificates, tmp_path):
    pipeline, preferences = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)
    decision = full_decision()
    decision.lines[1] = LineDecision(variant_id=999)
    pipeline.record_decision(staged, decision)

    result = pipeline.commit(staged)
    assert result.succeeded == 2
    assert len(result.certificates) == 2
    assert len(result.errors) == 1
    error = result.errors[0]
    assert error.line_index == 1
    assert error.item_code == "HS-50"
    assert "999" in error.message
    assert len(certificates.issued) == 2
    assert staged.status is ImportStatus.COMMITTED
    assert preferences.lookup(1, "HS-50") is None


def test_commit_writes_summary(customers, catalog, certificates, tmp_path):
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)
    decision = full_decision()
    decision.lines[2] = LineDecision(variant_id=3, quantity=0)
    pipeline.record_decision(staged, decision)
    pipeline.commit(staged)

    summary = json.loads((tmp_path / "logs" / f"import_{staged.id}.json").read_text(encoding="utf-8"))
    assert summary["invoice_number"] == "12345"
    assert summary["succeeded"] == 2
    assert summary["errors"][0]["line"] == 3
    assert summary["errors"][0]["code"] == "AC-01"
    assert summary["committed_at"].endswith("+00:00")


def test_commit_uses_lots_and_overrides(customers, catalog, certificates, tmp_path):
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)
    decision = ImportDecision(
        customer_id=2,
        lines={
            0: LineDecision(1, entry_certificate_id=10),
            1: LineDecision(2, quantity=5, custom_lot="MEU-LOTE"),
            2: LineDecision(3, entry_certificate_id=10),
        },
    )
    pipeline.record_decision(staged, decision)
    result = pipeline.commit(staged)

    first, second = result.certificates
    assert first.custom_lot == "L-2024-01"
    assert first.entry_certificate_id == 10
    assert second.custom_lot == "MEU-LOTE"
    assert second.sold_quantity == 5
    assert [error.line_index for error in result.errors] == [2]


def test_commit_creates_customer_when_requested(customers, catalog, certificates, tmp_path):
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    invoice = make_invoice(legal_name="Zeta Farmacêutica", cnpj="55.444.333/0001-22")
    staged = pipeline.stage(invoice, tenant_id=1)
    assert staged.client_resolution.action is ResolutionAction.CREATE

    decision = pipeline.default_decision(staged)
    assert decision.create_customer is True
    decision.lines.update({0: LineDecision(1), 1: LineDecision(2), 2: LineDecision(3)})
    pipeline.record_decision(staged, decision)

    result = pipeline.commit(staged)
    assert result.created_customer is True
    customer = customers.get(1, result.customer_id)
    assert customer.name == "Zeta Farmacêutica"
    assert customer.tax_id == "55444333000122"
    assert customer.internal_code == "CLI0001"
    assert all(certificate.customer_id == customer.id for certificate in result.certificates)


def test_invalid_new_customer_returns_import_to_review(customers, catalog, certificates, tmp_path):
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)
    decision = full_decision()
    decision.customer_id = None
    decision.create_customer = True
    decision.new_customer_data = SuggestedClientData(name="", tenant_id=1, country="Brasil")
    pipeline.record_decision(staged, decision)

    with pytest.raises(ClientValidationError):
        pipeline.commit(staged)
    assert staged.status is ImportStatus.REVIEWED
    assert certificates.issued == []

    pipeline.record_decision(staged, full_decision())
    assert pipeline.commit(staged).succeeded == 3


def test_committed_import_is_final(customers, catalog, certificates, tmp_path):
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)
    pipeline.record_decision(staged, full_decision())
    pipeline.commit(staged)

    with pytest.raises(InvalidTransitionError):
        pipeline.commit(staged)
    with pytest.raises(InvalidTransitionError):
        pipeline.record_decision(staged, full_decision())
    assert len(certificates.issued) == 3


def test_remember_mappings_can_be_disabled(customers, catalog, certificates, tmp_path):
    pipeline, preferences = build_pipeline(customers, catalog, certificates, tmp_path, remember_mappings=False)
    staged = pipeline.stage(make_invoice(), tenant_id=1)
    pipeline.record_decision(staged, full_decision())
    pipeline.commit(staged)
    assert preferences.mappings(1) == []


def test_transition_rejects_skipping_states():
    staged = StagedImport(id="abc", tenant_id=1, invoice=make_invoice())
    with pytest.raises(InvalidTransitionError):
        transition(staged, ImportStatus.COMMITTED)
    transition(staged, ImportStatus.REVIEWED)
    transition(staged, ImportStatus.COMMITTING)
    transition(staged, ImportStatus.REVIEWED)
    assert staged.status is ImportStatus.REVIEWED


def test_import_session_registry():
    registry = ImportSessionRegistry()
    staged = StagedImport(id="abc", tenant_id=1, invoice=make_invoice())
    registry.add(staged)
    assert registry.get("abc") is staged
    assert registry.list() == [staged]
    registry.discard("abc")
    assert registry.get("abc") is None
    registry.discard("abc")


def add_sulfuric_lots(certificates):
    certificates.add_entry_certificate(
        EntryCertificate(id=12, tenant_id=1, variant_id=1, internal_lot="L-2023-11", expiration_date=date(2024, 6, 1))
    )
    certificates.add_entry_certificate(
        EntryCertificate(
            id=13, tenant_id=1, variant_id=1, internal_lot="L-2023-08", expiration_date=date(2024, 1, 1), status="QUARANTINE"
        )
    )
    certificates.add_entry_certificate(
        EntryCertificate(id=14, tenant_id=1, variant_id=1, internal_lot="L-2024-02", expiration_date=date(2024, 9, 1))
    )


def test_default_decision_preselects_the_only_lot(customers, catalog, certificates, tmp_path):
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)
    assert pipeline.default_decision(staged).lines[0].entry_certificate_id == 10


def test_available_lots_are_approved_and_first_to_expire_first(catalog, certificates):
    add_sulfuric_lots(certificates)
    assert [lot.id for lot in certificates.available_lots(1, 1)] == [12, 14, 10]
    assert certificates.available_lots(2, 1) == []
    assert [lot.id for lot in certificates.available_lots(1, 3)] == [11]


def test_default_decision_picks_first_expiring_lot(customers, catalog, certificates, tmp_path):
    add_sulfuric_lots(certificates)
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)

    decision = pipeline.default_decision(staged)
    assert decision.lines[0].entry_certificate_id == 12

    decision.lines.update({1: LineDecision(2), 2: LineDecision(3)})
    pipeline.record_decision(staged, decision)
    result = pipeline.commit(staged)
    assert result.certificates[0].custom_lot == "L-2023-11"


def test_commit_rejects_lots_that_are_not_approved(customers, catalog, certificates, tmp_path):
    add_sulfuric_lots(certificates)
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)
    decision = full_decision()
    decision.lines[0] = LineDecision(1, entry_certificate_id=13)
    pipeline.record_decision(staged, decision)

    result = pipeline.commit(staged)
    assert result.succeeded == 2
    assert [error.line_index for error in result.errors] == [0]
    assert "não aprovado" in result.errors[0].message


@pytest.mark.parametrize("customer_id", [9999, 4])
def test_commit_rejects_customer_outside_tenant(customers, catalog, certificates, tmp_path, customer_id):
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)
    decision = full_decision()
    decision.customer_id = customer_id
    pipeline.record_decision(staged, decision)

    with pytest.raises(IncompleteDecisionError) as excinfo:
        pipeline.commit(staged)
    assert excinfo.value.missing_customer is True
    assert str(customer_id) in str(excinfo.value)
    assert certificates.issued == []
    assert staged.status is ImportStatus.REVIEWED


def test_duplicate_tax_id_created_after_staging_surfaces_at_commit(customers, catalog, certificates, tmp_path):
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(legal_name="Zeta Farmacêutica", cnpj="55.444.333/0001-22"), tenant_id=1)
    assert staged.client_resolution.action is ResolutionAction.CREATE

    decision = pipeline.default_decision(staged)
    decision.lines.update({0: LineDecision(1), 1: LineDecision(2), 2: LineDecision(3)})
    pipeline.record_decision(staged, decision)

    customers.insert(SuggestedClientData(name="Zeta Farma Ltda", tenant_id=1, country="Brasil", tax_id="55444333000122"))

    with pytest.raises(ClientCreationError):
        pipeline.commit(staged)
    assert staged.status is ImportStatus.REVIEWED
    assert certificates.issued == []
    assert len([customer for customer in customers.customers if customer.tax_id == "55444333000122"]) == 1


def test_summary_write_failure_does_not_fail_commit(customers, catalog, certificates, tmp_path):
    (tmp_path / "logs").write_text("", encoding="utf-8")
    pipeline, _ = build_pipeline(customers, catalog, certificates, tmp_path)
    staged = pipeline.stage(make_invoice(), tenant_id=1)
    pipeline.record_decision(staged, full_decision())

    result = pipeline.commit(staged)
    assert result.succeeded == 3
    assert staged.status is ImportStatus.COMMITTED
    assert len(certificates.issued) == 3


def test_mapping_write_failure_does_not_fail_commit(customers, catalog, certificates, tmp_path):
    blocker = tmp_path / "bloqueado"
    blocker.write_text("", encoding="utf-8")
    pipeline = ReconciliationPipeline(
        ClientResolver(customers),
        ProductItemMatcher(catalog, MappingPreferences(blocker / "mapeamentos.json")),
        certificates,
    )
    staged = pipeline.stage(make_invoice(), tenant_id=1)
    pipeline.record_decision(staged, full_decision())

    result = pipeline.commit(staged)
    assert result.succeeded == 3
    assert result.errors == []
    assert staged.status is ImportStatus.COMMITTED

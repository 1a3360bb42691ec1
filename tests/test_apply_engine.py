"""
Apply engine tests.

Tests cover:
  - Baseline, forecast and billable rewritten from the ledger
  - Gapless baseline versions per milestone across variations
  - Double apply refused without extra versions
  - Failure mid-loop (store or otherwise) rolls everything back and leaves the variation approved
  - Per-row idempotency when a version for the variation already exists
  - Certificate number and frozen snapshot
"""
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from tracker.core.exceptions import InvalidStateError, PartialApplicationError
from tracker.models import db
from tracker.models.project import Milestone
from tracker.models.variation import MilestoneBaselineVersion, Variation, VariationMilestone
from tracker.services import apply_engine, impact_ledger, variation_service
from tracker.services import variation_workflow as workflow
from tracker.services.certificate import certificate_number


def _approved(project, users, *milestones, new_cost="1200", new_end="2026-01-15"):
    """Build a variation over *milestones* and sign it as customer, leaving it awaiting the supplier."""
    v = variation_service.create_variation(project.id, {"title": "Extra interfaces", "reason": "Scope"}, None)
    for ms in milestones:
        row = impact_ledger.add(v["id"], ms.id, "More work")
        impact_ledger.update(row["id"], "new_baseline_cost", new_cost)
        impact_ledger.update(row["id"], "new_baseline_end", new_end)
    workflow.submit_for_approval(v["id"], "Two extra interfaces")
    workflow.sign_variation(v["id"], "customer", users["customer_pm"].id)
    return v


def _force_approved(variation_id, supplier_id):
    """Record the supplier signature without triggering the auto-apply."""
    stored = db.session.get(Variation, variation_id)
    stored.supplier_signed_by = supplier_id
    stored.supplier_signed_at = stored.customer_signed_at
    stored.status = "approved"
    db.session.commit()


def _versions(milestone_id):
    return [
        v.version for v in MilestoneBaselineVersion.query
        .filter_by(milestone_id=milestone_id)
        .order_by(MilestoneBaselineVersion.version)
    ]


class TestApply:
    def test_rewrites_baseline_and_forecast(self, project, users, milestone):
        v = _approved(project, users, milestone)
        _force_approved(v["id"], users["supplier_pm"].id)
        result = apply_engine.apply_variation(v["id"])

        assert result["status"] == "applied"
        assert result["applied_at"] is not None
        ms = db.session.get(Milestone, milestone.id)
        assert ms.baseline_billable == Decimal("1200.00")
        assert ms.baseline_end_date == date(2026, 1, 15)
        assert ms.forecast_end_date == date(2026, 1, 15)
        assert ms.forecast_billable == Decimal("1200.00")
        assert ms.billable == Decimal("1200.00")

    def test_forecast_untouched_when_rebaselining_disabled(self, app, project, users, milestone, monkeypatch):
        monkeypatch.setitem(app.config, "VARIATION_REBASELINE_FORECAST", False)
        v = _approved(project, users, milestone)
        _force_approved(v["id"], users["supplier_pm"].id)
        apply_engine.apply_variation(v["id"])

        ms = db.session.get(Milestone, milestone.id)
        assert ms.baseline_billable == Decimal("1200.00")
        assert ms.billable == Decimal("1000.00")
        assert ms.forecast_end_date == date(2026, 1, 10)

    def test_versions_are_gapless(self, project, users, milestone):
        first = _approved(project, users, milestone)
        workflow.sign_variation(first["id"], "supplier", users["supplier_pm"].id)
        second = _approved(project, users, milestone, new_cost="1300", new_end="2026-01-20")
        workflow.sign_variation(second["id"], "supplier", users["supplier_pm"].id)

        assert _versions(milestone.id) == [1, 2]
        rows = {
            r.variation_id: r for r in VariationMilestone.query.filter_by(milestone_id=milestone.id)
        }
        assert (rows[first["id"]].baseline_version_before, rows[first["id"]].baseline_version_after) == (1, 1)
        assert (rows[second["id"]].baseline_version_before, rows[second["id"]].baseline_version_after) == (1, 2)
        assert apply_engine.current_version(milestone.id) == 2

    def test_second_variation_starts_from_applied_baseline(self, project, users, milestone):
        first = _approved(project, users, milestone)
        workflow.sign_variation(first["id"], "supplier", users["supplier_pm"].id)
        second = variation_service.create_variation(project.id, {"title": "Follow-up"}, None)
        row = impact_ledger.add(second["id"], milestone.id)
        assert row["original_baseline_cost"] == 1200.0
        assert row["original_baseline_end"] == "2026-01-15"

    def test_versions_carry_signatures(self, project, users, milestone):
        v = _approved(project, users, milestone)
        workflow.sign_variation(v["id"], "supplier", users["supplier_pm"].id)
        version = MilestoneBaselineVersion.query.filter_by(milestone_id=milestone.id).one()
        assert version.variation_id == v["id"]
        assert version.supplier_signed_by == users["supplier_pm"].id
        assert version.customer_signed_by == users["customer_pm"].id

    def test_double_apply_refused(self, project, users, milestone):
        v = _approved(project, users, milestone)
        workflow.sign_variation(v["id"], "supplier", users["supplier_pm"].id)
        with pytest.raises(InvalidStateError):
            apply_engine.apply_variation(v["id"])
        assert _versions(milestone.id) == [1]

    def test_apply_requires_approved(self, project, users, milestone):
        v = _approved(project, users, milestone)
        with pytest.raises(InvalidStateError):
            apply_engine.apply_variation(v["id"])
        assert _versions(milestone.id) == []

    def test_rows_without_milestone_are_skipped(self, project, users, milestone, second_milestone):
        v = _approved(project, users, milestone, second_milestone)
        _force_approved(v["id"], users["supplier_pm"].id)
        db.session.delete(db.session.get(Milestone, second_milestone.id))
        db.session.commit()

        result = apply_engine.apply_variation(v["id"])
        assert result["status"] == "applied"
        assert _versions(milestone.id) == [1]


class TestFailure:
    def test_failure_rolls_back_every_milestone(self, project, users, milestone, second_milestone, monkeypatch):
        v = _approved(project, users, milestone, second_milestone)
        _force_approved(v["id"], users["supplier_pm"].id)

        original = apply_engine._apply_row
        calls = []

        def flaky(variation, row, rebaseline_forecast):
            calls.append(row.milestone_id)
            if len(calls) == 2:
                raise OperationalError("UPDATE milestones", {}, Exception("disk I/O error"))
            return original(variation, row, rebaseline_forecast)

        monkeypatch.setattr(apply_engine, "_apply_row", flaky)
        with pytest.raises(PartialApplicationError) as exc:
            apply_engine.apply_variation(v["id"])

        assert exc.value.processed == 1
        assert exc.value.milestone_id == second_milestone.id
        assert exc.value.variation_id == v["id"]

        stored = db.session.get(Variation, v["id"])
        assert stored.status == "approved"
        assert stored.certificate_data is None
        ms = db.session.get(Milestone, milestone.id)
        assert ms.baseline_billable == Decimal("1000.00")
        assert ms.baseline_end_date == date(2026, 1, 10)
        assert MilestoneBaselineVersion.query.count() == 0

    def test_unexpected_error_rolls_back_and_propagates(self, project, users, milestone, second_milestone, monkeypatch):
        v = _approved(project, users, milestone, second_milestone)
        _force_approved(v["id"], users["supplier_pm"].id)

        original = apply_engine._apply_row
        calls = []

        def flaky(variation, row, rebaseline_forecast):
            calls.append(row.milestone_id)
            if len(calls) == 2:
                raise RuntimeError("certificate renderer unavailable")
            return original(variation, row, rebaseline_forecast)

        monkeypatch.setattr(apply_engine, "_apply_row", flaky)
        with pytest.raises(RuntimeError):
            apply_engine.apply_variation(v["id"])

        assert not db.session.new and not db.session.dirty
        assert MilestoneBaselineVersion.query.count() == 0
        assert db.session.get(Milestone, milestone.id).baseline_billable == Decimal("1000.00")
        assert db.session.get(Variation, v["id"]).status == "approved"

    def test_retry_after_failure_succeeds(self, project, users, milestone, second_milestone, monkeypatch):
        v = _approved(project, users, milestone, second_milestone)
        _force_approved(v["id"], users["supplier_pm"].id)

        def broken(variation, row, rebaseline_forecast):
            raise OperationalError("UPDATE milestones", {}, Exception("deadlock"))

        monkeypatch.setattr(apply_engine, "_apply_row", broken)
        with pytest.raises(PartialApplicationError):
            apply_engine.apply_variation(v["id"])
        monkeypatch.undo()

        result = apply_engine.apply_variation(v["id"])
        assert result["status"] == "applied"
        assert _versions(milestone.id) == [1]
        assert _versions(second_milestone.id) == [1]

    def test_existing_version_is_not_duplicated(self, project, users, milestone):
        v = _approved(project, users, milestone)
        _force_approved(v["id"], users["supplier_pm"].id)
        db.session.add(MilestoneBaselineVersion(
            milestone_id=milestone.id, version=1, variation_id=v["id"],
            baseline_billable=Decimal("1200.00"), baseline_end_date=date(2026, 1, 15),
        ))
        db.session.commit()

        apply_engine.apply_variation(v["id"])
        assert _versions(milestone.id) == [1]
        row = VariationMilestone.query.filter_by(variation_id=v["id"]).one()
        assert row.baseline_version_after == 1


class TestCertificate:
    def test_snapshot_contents(self, project, users, milestone):
        v = _approved(project, users, milestone)
        result = workflow.sign_variation(v["id"], "supplier", users["supplier_pm"].id)

        cert = result["certificate_data"]
        assert result["certificate_number"] == "ACME-VAR-001-CERT"
        assert cert["variation_ref"] == "VAR-001"
        assert cert["reason"] == "Scope"
        assert cert["total_cost_impact"] == 200.0
        assert cert["total_days_impact"] == 5
        assert cert["supplier_signature"]["full_name"] == "Supplier Pm"
        assert cert["customer_signature"]["user_id"] == users["customer_pm"].id
        [entry] = cert["affected_milestones"]
        assert entry["milestone_ref"] == "MS-01"
        assert entry["original_baseline_cost"] == 1000.0
        assert entry["new_baseline_cost"] == 1200.0
        assert entry["baseline_version_after"] == 1
        assert cert["applied_at"][:19] == result["applied_at"][:19]

    def test_certificate_is_frozen(self, project, users, milestone):
        v = _approved(project, users, milestone)
        workflow.sign_variation(v["id"], "supplier", users["supplier_pm"].id)

        stored = db.session.get(Variation, v["id"])
        stored.certificate_data = {"tampered": True}
        with pytest.raises(InvalidStateError):
            db.session.commit()
        db.session.rollback()

        stored = db.session.get(Variation, v["id"])
        stored.status = "draft"
        with pytest.raises(InvalidStateError):
            db.session.flush()
        db.session.rollback()
        assert db.session.get(Variation, v["id"]).certificate_data["variation_ref"] == "VAR-001"

    def test_header_edits_outside_frozen_fields_are_allowed(self, project, users, milestone):
        v = _approved(project, users, milestone)
        workflow.sign_variation(v["id"], "supplier", users["supplier_pm"].id)
        stored = db.session.get(Variation, v["id"])
        stored.form_data = {"archived": True}
        db.session.commit()

    def test_prefix_fallback_without_project_code(self, project):
        project.code = ""
        db.session.commit()
        variation = Variation(project_id=project.id, variation_ref="VAR-004", title="x", variation_type="combined")
        db.session.add(variation)
        db.session.commit()
        assert certificate_number(variation) == "PROJ-VAR-004-CERT"

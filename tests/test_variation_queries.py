"""
Variation read models and aggregate commands.

Tests cover:
  - Header validation on create, header edits while draft, wizard auto-save
  - Delete only in draft / submitted / rejected, with ledger cascade
  - Details with signer profiles, list with milestone_count, dashboard summary
  - Baseline history, variations per milestone, pending check
  - Date-derived milestone dependencies
"""
from datetime import date

import pytest

from conftest import make_milestone
from tracker.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from tracker.models import db
from tracker.models.variation import Variation, VariationDeliverable, VariationMilestone
from tracker.services import impact_ledger, variation_service
from tracker.services import variation_workflow as workflow


def _variation(project, title="Extra scope", *milestones, cost="1200", end="2026-01-15"):
    v = variation_service.create_variation(project.id, {"title": title}, None)
    for ms in milestones:
        row = impact_ledger.add(v["id"], ms.id)
        impact_ledger.update(row["id"], "new_baseline_cost", cost)
        impact_ledger.update(row["id"], "new_baseline_end", end)
    return v


def _applied(project, users, *milestones, **kw):
    v = _variation(project, "Applied change", *milestones, **kw)
    workflow.submit_for_approval(v["id"], "Summary")
    workflow.sign_variation(v["id"], "supplier", users["supplier_pm"].id)
    return workflow.sign_variation(v["id"], "customer", users["customer_pm"].id)


class TestCreateAndEdit:
    def test_create_defaults(self, project, users):
        v = variation_service.create_variation(
            project.id, {"title": "  Extra scope ", "form_data": {"step1": {"x": 1}}}, users["supplier_pm"].id,
        )
        assert v["status"] == "draft"
        assert v["form_step"] == 1
        assert v["title"] == "Extra scope"
        assert v["variation_type"] == "combined"
        assert v["created_by"] == users["supplier_pm"].id
        assert v["form_data"] == {"step1": {"x": 1}}

    def test_create_requires_title(self, project):
        with pytest.raises(ValidationError) as exc:
            variation_service.create_variation(project.id, {"title": ""}, None)
        assert "title" in exc.value.details

    def test_create_rejects_unknown_type(self, project):
        with pytest.raises(ValidationError):
            variation_service.create_variation(project.id, {"title": "X", "variation_type": "misc"}, None)

    def test_create_in_unknown_project(self):
        with pytest.raises(NotFoundError):
            variation_service.create_variation(4242, {"title": "X"}, None)

    def test_update_header_while_draft(self, project):
        v = _variation(project)
        result = variation_service.update_variation(
            v["id"], {"title": "Renamed", "variation_type": "time_extension", "reason": "Late data"},
        )
        assert result["title"] == "Renamed"
        assert result["variation_type"] == "time_extension"
        assert result["reason"] == "Late data"

    def test_update_header_refused_after_submit(self, project, milestone):
        v = _variation(project, "Extra", milestone)
        workflow.submit_for_approval(v["id"], "Summary")
        with pytest.raises(InvalidStateError):
            variation_service.update_variation(v["id"], {"title": "Renamed"})

    def test_save_form_progress(self, project):
        v = _variation(project)
        result = variation_service.save_form_progress(v["id"], {"milestones": [1, 2]}, 3)
        assert result["form_step"] == 3
        assert result["form_data"] == {"milestones": [1, 2]}
        assert result["status"] == "draft"

    def test_save_form_progress_rejects_bad_step(self, project):
        v = _variation(project)
        with pytest.raises(ValidationError):
            variation_service.save_form_progress(v["id"], {}, "three")
        with pytest.raises(ValidationError):
            variation_service.save_form_progress(v["id"], {}, 0)


class TestDelete:
    @pytest.mark.parametrize("status", ["draft", "submitted", "rejected"])
    def test_deletable_states(self, project, milestone, status):
        v = _variation(project, "Doomed", milestone)
        impact_ledger.add_deliverable_change(v["id"], {"change_type": "modify"})
        stored = db.session.get(Variation, v["id"])
        stored.status = status
        db.session.commit()

        variation_service.delete_draft_variation(v["id"])
        assert db.session.get(Variation, v["id"]) is None
        assert VariationMilestone.query.filter_by(variation_id=v["id"]).count() == 0
        assert VariationDeliverable.query.filter_by(variation_id=v["id"]).count() == 0

    @pytest.mark.parametrize("status", ["awaiting_customer", "awaiting_supplier", "approved"])
    def test_not_deletable_once_signed(self, project, milestone, status):
        v = _variation(project, "Kept", milestone)
        stored = db.session.get(Variation, v["id"])
        stored.status = status
        db.session.commit()
        with pytest.raises(InvalidStateError):
            variation_service.delete_draft_variation(v["id"])
        assert db.session.get(Variation, v["id"]) is not None

    def test_applied_not_deletable(self, project, users, milestone):
        v = _applied(project, users, milestone)
        with pytest.raises(InvalidStateError):
            variation_service.delete_draft_variation(v["id"])

    def test_delete_unknown(self):
        with pytest.raises(NotFoundError):
            variation_service.delete_draft_variation(99999)


class TestReadModels:
    def test_details_include_ledger_and_profiles(self, project, users, milestone):
        v = _variation(project, "Detailed", milestone)
        impact_ledger.add_deliverable_change(v["id"], {"change_type": "add", "deliverable_ref": "D-3"})
        workflow.submit_for_approval(v["id"], "Summary")
        workflow.sign_variation(v["id"], "supplier", users["supplier_pm"].id)
        workflow.reject_variation(v["id"], users["customer_pm"].id, "No budget")

        details = variation_service.get_with_details(v["id"])
        assert details["affected_milestones"][0]["milestone"]["milestone_ref"] == "MS-01"
        assert details["deliverable_changes"][0]["deliverable_ref"] == "D-3"
        assert details["supplier_signer"] == {
            "id": users["supplier_pm"].id, "full_name": "Supplier Pm", "email": "supplier_pm@example.com",
        }
        assert details["customer_signer"] is None
        assert details["rejector"]["id"] == users["customer_pm"].id

    def test_list_with_stats_newest_first(self, project, milestone, second_milestone):
        first = _variation(project, "First", milestone, second_milestone)
        second = _variation(project, "Second", milestone)
        items = variation_service.get_all_with_stats(project.id)
        assert [i["id"] for i in items] == [second["id"], first["id"]]
        assert [i["milestone_count"] for i in items] == [1, 2]

    def test_summary(self, project, users, milestone, second_milestone):
        _applied(project, users, milestone)                       # +200, +5
        _applied(project, users, second_milestone, cost="450", end="2026-01-18")  # -50, -2
        _variation(project, "Draft")
        pending = _variation(project, "Pending", milestone)
        workflow.submit_for_approval(pending["id"], "Summary")
        rejected = _variation(project, "Rejected")
        workflow.reject_variation(rejected["id"], None, "No")

        summary = variation_service.get_summary(project.id)
        assert summary == {
            "total": 5,
            "draft": 1,
            "pending": 1,
            "approved": 0,
            "applied": 2,
            "rejected": 1,
            "total_cost_impact": 150.0,
            "total_days_impact": 3,
        }

    def test_certificate_only_when_applied(self, project, users, milestone):
        draft = _variation(project, "Draft", milestone)
        with pytest.raises(NotFoundError):
            variation_service.get_certificate(draft["id"])
        applied = _applied(project, users, milestone)
        cert = variation_service.get_certificate(applied["id"])
        assert cert["certificate_number"] == f"ACME-{applied['variation_ref']}-CERT"


class TestMilestoneViews:
    def test_baseline_history(self, project, users, milestone):
        first = _applied(project, users, milestone)
        second = _applied(project, users, milestone, cost="1300", end="2026-01-20")
        history = variation_service.get_milestone_baseline_history(milestone.id)
        assert [h["version"] for h in history] == [1, 2]
        assert history[0]["variation"]["variation_ref"] == first["variation_ref"]
        assert history[1]["baseline_billable"] == 1300.0
        assert history[1]["variation_id"] == second["id"]

    def test_variations_for_milestone_and_pending(self, project, users, milestone, second_milestone):
        assert variation_service.has_pending_variation(milestone.id) is False
        applied = _applied(project, users, milestone)
        assert variation_service.has_pending_variation(milestone.id) is False

        draft = _variation(project, "Open", milestone)
        _variation(project, "Elsewhere", second_milestone)
        assert variation_service.has_pending_variation(milestone.id) is True

        ids = {v["id"] for v in variation_service.get_variations_for_milestone(milestone.id)}
        assert ids == {applied["id"], draft["id"]}

    def test_unknown_milestone(self):
        with pytest.raises(NotFoundError):
            variation_service.get_milestone_baseline_history(99999)

    def test_dependencies_from_dates(self, project):
        make_milestone(project, "MS-B", start=date(2026, 2, 1), end=date(2026, 2, 28))
        make_milestone(project, "MS-A", start=date(2026, 1, 1), end=date(2026, 1, 31))
        make_milestone(project, "MS-C", start=date(2026, 2, 28), end=date(2026, 3, 31))
        make_milestone(project, "MS-X", start=None, end=None)

        result = variation_service.get_milestones_with_dependencies(project.id)
        by_ref = {m["milestone_ref"]: m for m in result}
        assert [m["milestone_ref"] for m in result] == ["MS-A", "MS-B", "MS-C", "MS-X"]
        assert by_ref["MS-A"]["dependencies"] == []
        assert by_ref["MS-A"]["dependents"] == ["MS-B", "MS-C"]
        assert by_ref["MS-B"]["dependencies"] == ["MS-A"]
        assert by_ref["MS-B"]["dependents"] == ["MS-C"]
        assert by_ref["MS-C"]["dependencies"] == ["MS-A", "MS-B"]
        assert by_ref["MS-X"]["dependencies"] == [] and by_ref["MS-X"]["dependents"] == []

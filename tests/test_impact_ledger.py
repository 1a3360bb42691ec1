"""
Milestone impact ledger tests.

Tests cover:
  - Original/new values seeded from the milestone baseline (with fallback)
  - Duplicate and cross-project milestones rejected
  - Field-level updates with parsing and an editable-field whitelist
  - Removal cascades to deliverable changes; clear_all; sync_from_draft
  - Ledger frozen once the variation leaves draft/submitted
  - Malformed ids and amounts outside the money column rejected
"""
from datetime import date
from decimal import Decimal

import pytest

from conftest import make_milestone
from tracker.core.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from tracker.models import db
from tracker.models.variation import Variation, VariationDeliverable, VariationMilestone
from tracker.services import impact_ledger, variation_service


@pytest.fixture()
def variation(project):
    return variation_service.create_variation(project.id, {"title": "Extra interfaces"}, None)


def _set_status(variation_id, status):
    v = db.session.get(Variation, variation_id)
    v.status = status
    db.session.commit()


class TestAdd:
    def test_seeds_values_from_baseline(self, variation, milestone):
        row = impact_ledger.add(variation["id"], milestone.id, "Two extra interfaces")
        assert row["original_baseline_cost"] == 1000.0
        assert row["new_baseline_cost"] == 1000.0
        assert row["original_baseline_start"] == "2026-01-01"
        assert row["original_baseline_end"] == "2026-01-10"
        assert row["new_baseline_end"] == "2026-01-10"
        assert row["change_rationale"] == "Two extra interfaces"
        assert row["milestone"]["milestone_ref"] == "MS-01"

    def test_falls_back_to_working_values_without_baseline(self, project, variation):
        ms = make_milestone(project, "MS-09", cost="750.00", baselined=False)
        row = impact_ledger.add(variation["id"], ms.id)
        assert row["original_baseline_cost"] == 750.0
        assert row["original_baseline_start"] == "2026-01-01"

    def test_duplicate_rejected(self, variation, milestone):
        impact_ledger.add(variation["id"], milestone.id)
        with pytest.raises(ConflictError):
            impact_ledger.add(variation["id"], milestone.id)
        assert VariationMilestone.query.filter_by(variation_id=variation["id"]).count() == 1

    @pytest.mark.parametrize("bad_id", [[1], {"id": 1}, "MS-01", True])
    def test_malformed_milestone_id(self, variation, milestone, bad_id):
        with pytest.raises(ValidationError) as exc:
            impact_ledger.add(variation["id"], bad_id)
        assert exc.value.details == {"milestone_id": "invalid"}

    def test_numeric_string_milestone_id(self, variation, milestone):
        row = impact_ledger.add(variation["id"], str(milestone.id))
        assert row["milestone_id"] == milestone.id

    def test_milestone_of_other_project_not_found(self, variation, other_project):
        foreign = make_milestone(other_project, "MS-01")
        with pytest.raises(NotFoundError):
            impact_ledger.add(variation["id"], foreign.id)

    def test_unknown_variation_not_found(self, milestone):
        with pytest.raises(NotFoundError):
            impact_ledger.add(99999, milestone.id)

    def test_add_refused_after_approval(self, variation, milestone):
        _set_status(variation["id"], "approved")
        with pytest.raises(InvalidStateError):
            impact_ledger.add(variation["id"], milestone.id)


class TestUpdate:
    def test_update_cost_and_end(self, variation, milestone):
        row = impact_ledger.add(variation["id"], milestone.id)
        impact_ledger.update(row["id"], "new_baseline_cost", "1200")
        updated = impact_ledger.update(row["id"], "new_baseline_end", "15.01.2026")
        assert updated["new_baseline_cost"] == 1200.0
        assert updated["new_baseline_end"] == "2026-01-15"
        assert updated["original_baseline_cost"] == 1000.0

    def test_original_values_are_not_editable(self, variation, milestone):
        row = impact_ledger.add(variation["id"], milestone.id)
        with pytest.raises(ValidationError):
            impact_ledger.update(row["id"], "original_baseline_cost", "1")

    def test_unparseable_value(self, variation, milestone):
        row = impact_ledger.add(variation["id"], milestone.id)
        with pytest.raises(ValidationError):
            impact_ledger.update(row["id"], "new_baseline_start", "next tuesday")
        with pytest.raises(ValidationError):
            impact_ledger.update(row["id"], "new_baseline_cost", "lots")

    @pytest.mark.parametrize("amount", ["1e30", "10000000000", "-1e10", "NaN", [1]])
    def test_amount_outside_money_column_rejected(self, variation, milestone, amount):
        row = impact_ledger.add(variation["id"], milestone.id)
        with pytest.raises(ValidationError) as exc:
            impact_ledger.update(row["id"], "new_baseline_cost", amount)
        assert exc.value.details == {"new_baseline_cost": "invalid"}
        assert db.session.get(VariationMilestone, row["id"]).new_baseline_cost == Decimal("1000.00")

    def test_largest_amount_accepted(self, variation, milestone):
        row = impact_ledger.add(variation["id"], milestone.id)
        updated = impact_ledger.update(row["id"], "new_baseline_cost", "9999999999.99")
        assert updated["new_baseline_cost"] == 9999999999.99

    def test_update_refused_when_rejected(self, variation, milestone):
        row = impact_ledger.add(variation["id"], milestone.id)
        _set_status(variation["id"], "rejected")
        with pytest.raises(InvalidStateError):
            impact_ledger.update(row["id"], "new_baseline_cost", "1500")


class TestRemoval:
    def test_remove_cascades_deliverable_changes(self, variation, milestone):
        row = impact_ledger.add(variation["id"], milestone.id)
        impact_ledger.add_deliverable_change(
            variation["id"],
            {"change_type": "add", "deliverable_ref": "D-10", "variation_milestone_id": row["id"]},
        )
        impact_ledger.remove(row["id"])
        assert db.session.get(VariationMilestone, row["id"]) is None
        assert VariationDeliverable.query.filter_by(variation_id=variation["id"]).count() == 0

    def test_clear_all(self, variation, milestone, second_milestone):
        impact_ledger.add(variation["id"], milestone.id)
        impact_ledger.add(variation["id"], second_milestone.id)
        impact_ledger.add_deliverable_change(variation["id"], {"change_type": "modify"})
        assert impact_ledger.clear_all(variation["id"]) == 2
        assert VariationMilestone.query.filter_by(variation_id=variation["id"]).count() == 0
        assert VariationDeliverable.query.filter_by(variation_id=variation["id"]).count() == 0


class TestSyncFromDraft:
    def test_sync_replaces_ledger(self, variation, milestone, second_milestone):
        impact_ledger.add(variation["id"], milestone.id)
        rows = impact_ledger.sync_from_draft(variation["id"], [
            {"milestone_id": second_milestone.id, "new_baseline_cost": "650", "new_baseline_end": "2026-01-25"},
        ])
        assert len(rows) == 1
        assert rows[0]["milestone_id"] == second_milestone.id
        assert rows[0]["original_baseline_cost"] == 500.0
        assert rows[0]["new_baseline_cost"] == 650.0
        assert rows[0]["new_baseline_end"] == "2026-01-25"
        stored = VariationMilestone.query.filter_by(variation_id=variation["id"]).all()
        assert [r.milestone_id for r in stored] == [second_milestone.id]

    def test_failed_sync_keeps_previous_ledger(self, variation, milestone):
        impact_ledger.add(variation["id"], milestone.id)
        with pytest.raises(NotFoundError):
            impact_ledger.sync_from_draft(variation["id"], [{"milestone_id": 424242}])
        stored = VariationMilestone.query.filter_by(variation_id=variation["id"]).all()
        assert [r.milestone_id for r in stored] == [milestone.id]

    def test_duplicate_entries_rejected(self, variation, milestone):
        with pytest.raises(ConflictError):
            impact_ledger.sync_from_draft(
                variation["id"], [{"milestone_id": milestone.id}, {"milestone_id": milestone.id}],
            )

    def test_duplicates_detected_across_id_types(self, variation, milestone):
        with pytest.raises(ConflictError):
            impact_ledger.sync_from_draft(
                variation["id"], [{"milestone_id": milestone.id}, {"milestone_id": str(milestone.id)}],
            )
        assert VariationMilestone.query.filter_by(variation_id=variation["id"]).count() == 0

    def test_malformed_entry_keeps_previous_ledger(self, variation, milestone, second_milestone):
        impact_ledger.add(variation["id"], milestone.id)
        with pytest.raises(ValidationError):
            impact_ledger.sync_from_draft(
                variation["id"], [{"milestone_id": second_milestone.id}, {"milestone_id": [2]}],
            )
        with pytest.raises(ValidationError):
            impact_ledger.sync_from_draft(
                variation["id"], [{"milestone_id": second_milestone.id, "new_baseline_cost": "1e30"}],
            )
        stored = VariationMilestone.query.filter_by(variation_id=variation["id"]).all()
        assert [r.milestone_id for r in stored] == [milestone.id]

    def test_entry_without_milestone_id(self, variation):
        with pytest.raises(ValidationError):
            impact_ledger.sync_from_draft(variation["id"], [{"new_baseline_cost": "10"}])


class TestDeliverableChanges:
    def test_add_and_remove(self, variation):
        change = impact_ledger.add_deliverable_change(
            variation["id"], {"change_type": "add", "deliverable_ref": "D-11", "new_data": {"name": "API contract"}},
        )
        assert change["new_data"] == {"name": "API contract"}
        impact_ledger.remove_deliverable_change(change["id"])
        assert db.session.get(VariationDeliverable, change["id"]) is None

    def test_invalid_change_type(self, variation):
        with pytest.raises(ValidationError):
            impact_ledger.add_deliverable_change(variation["id"], {"change_type": "rename"})

    @pytest.mark.parametrize("change_type", [None, 7, ["add"]])
    def test_change_type_must_be_text(self, variation, change_type):
        with pytest.raises(ValidationError):
            impact_ledger.add_deliverable_change(variation["id"], {"change_type": change_type})

    def test_malformed_row_reference(self, variation):
        with pytest.raises(ValidationError):
            impact_ledger.add_deliverable_change(
                variation["id"], {"change_type": "modify", "variation_milestone_id": [1]},
            )

    def test_removal_needs_reason(self, variation):
        with pytest.raises(ValidationError):
            impact_ledger.add_deliverable_change(variation["id"], {"change_type": "remove", "deliverable_ref": "D-1"})

    def test_row_of_other_variation_not_found(self, project, variation, milestone):
        other = variation_service.create_variation(project.id, {"title": "Other"}, None)
        row = impact_ledger.add(other["id"], milestone.id)
        with pytest.raises(NotFoundError):
            impact_ledger.add_deliverable_change(
                variation["id"], {"change_type": "modify", "variation_milestone_id": row["id"]},
            )


def test_new_values_are_decimal(variation, milestone):
    row = impact_ledger.add(variation["id"], milestone.id)
    impact_ledger.update(row["id"], "new_baseline_cost", 1200.1)
    stored = db.session.get(VariationMilestone, row["id"])
    assert stored.new_baseline_cost == Decimal("1200.10")
    assert stored.original_baseline_end == date(2026, 1, 10)

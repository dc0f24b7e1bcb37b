"""Tests for deduplication against known remote assignments."""

from datetime import datetime, timezone

from src.intune.assignment.domain.entities import (
    ExistingAssignment,
    Intent,
    TargetType,
    WorkItemStatus,
)
from src.intune.assignment.use_cases.validate import find_existing, validate

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def existing_for(item, intent=None):
    return ExistingAssignment(
        item.artifact_id,
        item.target_type,
        intent or item.intent,
        target_id=item.target_id,
    )


class TestValidate:
    """Tests for validate()."""

    def test_no_known_state_submits_everything(self, make_items):
        items = make_items(3)
        skip, submit = validate(items, None, now=NOW)
        assert skip == []
        assert submit == items
        assert all(i.status == WorkItemStatus.PENDING for i in items)

    def test_existing_assignment_is_skipped(self, make_items):
        items = make_items(3)
        known = {items[1].artifact_id: [existing_for(items[1])]}

        skip, submit = validate(items, known, now=NOW)

        assert skip == [items[1]]
        assert submit == [items[0], items[2]]
        assert items[1].status == WorkItemStatus.COMPLETED
        assert items[1].last_error == "already exists (skipped)"
        assert items[1].completed_at == NOW

    def test_same_target_different_intent_is_submitted(self, make_items):
        items = make_items(1)
        known = {items[0].artifact_id: [existing_for(items[0], Intent.AVAILABLE)]}

        skip, submit = validate(items, known, now=NOW)

        assert skip == []
        assert submit == items

    def test_empty_known_list_is_a_miss(self, make_items):
        items = make_items(2)
        skip, submit = validate(items, {items[0].artifact_id: []}, now=NOW)
        assert skip == []
        assert len(submit) == 2

    def test_every_item_lands_in_exactly_one_list(self, make_items):
        items = make_items(10)
        known = {i.artifact_id: [existing_for(i)] for i in items[::3]}

        skip, submit = validate(items, known, now=NOW)

        assert len(skip) + len(submit) == len(items)
        assert not set(map(id, skip)) & set(map(id, submit))

    def test_running_twice_gives_the_same_partition(self, make_items):
        items = make_items(6)
        known = {i.artifact_id: [existing_for(i)] for i in items[:2]}

        first = validate(items, known, now=NOW)
        second = validate(items, known, now=NOW)

        assert first == second


class TestFindExisting:
    """Tests for find_existing()."""

    def test_returns_matching_assignment(self, make_items):
        item = make_items(1)[0]
        other = ExistingAssignment(item.artifact_id, TargetType.ALL_DEVICES, Intent.REQUIRED)
        match = existing_for(item)
        assert find_existing(item, {item.artifact_id: [other, match]}) is match

    def test_returns_none_on_miss(self, make_items):
        item = make_items(1)[0]
        assert find_existing(item, {}) is None

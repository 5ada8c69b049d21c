# tests/test_query_projection.py - Pure filter / group / sort / paginate functions
from datetime import datetime, timezone

import pytest

from errors import ValidationError
from query_projection import (
    TaskInstanceView, TaskTemplateView, InstanceFilter, TemplateFilter,
    filter_instances, filter_templates, group_by_status, group_by_category,
    sort_views, paginate, STATUS_COLUMNS, UNCATEGORIZED,
)


def _view(id, title, **kw):
    kw.setdefault("campaign_id", "c1")
    kw.setdefault("requirement_id", "r1")
    return TaskInstanceView(id=id, title=title, **kw)


@pytest.fixture
def views():
    return [
        _view("i3", "Check Logs", status="In Progress", category="Logging", owner_user_id="u1",
              standard_id="pci", campaign_name="Q1", due_date=datetime(2026, 3, 1, tzinfo=timezone.utc)),
        _view("i1", "Check Firewall", status="Open", category="Network", owner_user_id="u2",
              standard_id="pci", campaign_name="Q2", description="Review the firewall rule base"),
        _view("i2", "check firewall", status="Closed", category=None, owner_user_id="u1",
              standard_id="iso", campaign_name="Q1", campaign_id="c2",
              due_date=datetime(2026, 2, 1, tzinfo=timezone.utc)),
        _view("i4", "Access review", status="Open", category="Network", requirement_id="r2",
              standard_id="pci", campaign_name=None, is_overdue=True),
    ]


def test_filter_combines_criteria(views):
    result = filter_instances(views, InstanceFilter(status="Open", category="Network"))
    assert [v.id for v in result] == ["i1", "i4"]

    result = filter_instances(views, InstanceFilter(owner_user_id="u1", standard_id="pci"))
    assert [v.id for v in result] == ["i3"]


def test_filter_by_multiple_statuses_and_text(views):
    result = filter_instances(views, InstanceFilter(status=["Open", "Closed"], text="FIREWALL"))
    assert sorted(v.id for v in result) == ["i1", "i2"]

    result = filter_instances(views, InstanceFilter(text="rule base"))
    assert [v.id for v in result] == ["i1"]


def test_filter_uncategorized_and_overdue(views):
    assert [v.id for v in filter_instances(views, InstanceFilter(category=UNCATEGORIZED))] == ["i2"]
    assert [v.id for v in filter_instances(views, InstanceFilter(overdue=True))] == ["i4"]


def test_filter_rejects_unknown_status():
    with pytest.raises(ValidationError):
        InstanceFilter(status="Done")


def test_no_criteria_returns_copy(views):
    result = filter_instances(views)
    assert result == views
    assert result is not views


def test_group_by_status_has_every_column(views):
    groups = group_by_status(views)
    assert list(groups) == STATUS_COLUMNS
    assert [v.id for v in groups["Open"]] == ["i1", "i4"]
    assert groups["Pending Review"] == []
    assert groups["Failed"] == []


def test_group_by_status_empty_board():
    groups = group_by_status([])
    assert list(groups) == ["Open", "In Progress", "Pending Review", "Closed", "Failed"]


def test_group_by_category_defaults(views):
    groups = group_by_category(views)
    assert list(groups) == ["Logging", "Network", UNCATEGORIZED]
    assert [v.id for v in groups[UNCATEGORIZED]] == ["i2"]


def test_sort_by_title_is_stable_with_id_tiebreak(views):
    ordered = sort_views(views, "title")
    # "Check Firewall" and "check firewall" compare equal; id breaks the tie
    assert [v.id for v in ordered] == ["i4", "i1", "i2", "i3"]
    assert [v.id for v in sort_views(list(reversed(views)), "title")] == ["i4", "i1", "i2", "i3"]


def test_sort_missing_values_last(views):
    assert [v.id for v in sort_views(views, "due_date")] == ["i2", "i3", "i1", "i4"]
    assert [v.id for v in sort_views(views, "due_date", descending=True)] == ["i3", "i2", "i1", "i4"]
    assert [v.id for v in sort_views(views, "campaign_name")] == ["i2", "i3", "i1", "i4"]


def test_sort_rejects_unknown_key(views):
    with pytest.raises(ValidationError):
        sort_views(views, "colour")


def test_paginate(views):
    ordered = sort_views(views, "title")
    page = paginate(ordered, limit=2, offset=1)
    assert [v.id for v in page.items] == ["i1", "i2"]
    assert page.total == 4
    assert page.has_more is True
    assert paginate(ordered, limit=2, offset=2).has_more is False
    assert len(paginate(ordered).items) == 4
    with pytest.raises(ValidationError):
        paginate(ordered, offset=-1)


def test_template_filters():
    templates = [
        TaskTemplateView(id="t1", title="Check Firewall", category="Network",
                         requirement_ids=("r1", "r2"), standard_ids=("pci",)),
        TaskTemplateView(id="t2", title="Policy review", requirement_ids=("r9",), standard_ids=("iso",),
                         high_level_check_type="document"),
    ]
    assert [t.id for t in filter_templates(templates, TemplateFilter(standard_id="pci"))] == ["t1"]
    assert [t.id for t in filter_templates(templates, TemplateFilter(requirement_id="r9"))] == ["t2"]
    assert [t.id for t in filter_templates(templates, TemplateFilter(high_level_check_type="document"))] == ["t2"]
    assert list(group_by_category(templates)) == ["Network", UNCATEGORIZED]

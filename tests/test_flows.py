from datetime import date

import pytest

import flows
from flows import (
    Advance,
    Cancel,
    Complete,
    EditDraft,
    EditStep,
    ProjectDraft,
    ProjectStep,
    RegistrationStep,
    Retry,
    TaskStep,
    UserDraft,
)

ALL_STEPS = [step for flow in flows.FLOWS.values() for step in flow.steps]

TASK_DATA = {"project_id": 3, "created_by": 10, "task_name": "Write report"}


@pytest.mark.parametrize("step", ALL_STEPS, ids=lambda s: s.value)
@pytest.mark.parametrize("token", ["cancel", "CANCEL", "❌ Cancel"])
def test_cancel_is_recognised_at_every_step(step, token):
    assert isinstance(flows.advance(step, token, {}), Cancel)


def test_invalid_calendar_date_retries_same_step():
    outcome = flows.advance(TaskStep.WAITING_DUE_DATE, "2024-02-30", TASK_DATA)
    assert outcome == Retry(TaskStep.WAITING_DUE_DATE, "invalid_date")


@pytest.mark.parametrize("value", ["18.10.2026", "2026-1-5", "tomorrow", ""])
def test_malformed_dates_retry(value):
    assert isinstance(flows.advance(TaskStep.WAITING_DUE_DATE, value, TASK_DATA), Retry)


@pytest.mark.parametrize("token", ["skip", "Skip", "SKIP"])
def test_skip_due_date_advances_with_none(token):
    outcome = flows.advance(TaskStep.WAITING_DUE_DATE, token, TASK_DATA)
    assert outcome == Advance(TaskStep.WAITING_TASK_TYPE, {"task_due_date": None})


def test_valid_due_date_is_parsed():
    outcome = flows.advance(TaskStep.WAITING_DUE_DATE, "2026-10-20", TASK_DATA)
    assert outcome.patch == {"task_due_date": date(2026, 10, 20)}


def test_required_name_rejects_blank():
    assert flows.advance(ProjectStep.WAITING_NAME, "   ", {}) == Retry(ProjectStep.WAITING_NAME, "empty_value")


def test_project_flow_completes_with_empty_description():
    outcome = flows.advance(ProjectStep.WAITING_DESCRIPTION, "skip", {"project_name": "Alpha"})
    assert isinstance(outcome, Complete)
    assert outcome.entity == ProjectDraft(name="Alpha", description="")


def test_registration_contact_skip_falls_back_to_username():
    data = {"name": "Ann", "surname": "Lee", "role": "Designer", "username": "ann_l"}
    outcome = flows.advance(RegistrationStep.WAITING_CONTACT, "skip", data)
    assert outcome.entity == UserDraft(name="Ann", surname="Lee", role="Designer", contact="ann_l")


def test_task_type_and_priority_accept_button_labels():
    assert flows.advance(TaskStep.WAITING_TASK_TYPE, "🐞 Bug", {}).patch == {"task_type": "bug"}
    assert flows.advance(TaskStep.WAITING_PRIORITY, "🔴 High", {}).patch == {"priority": "high"}
    assert flows.advance(TaskStep.WAITING_PRIORITY, "urgent", {}) == Retry(TaskStep.WAITING_PRIORITY, "invalid_priority")


@pytest.mark.parametrize(
    "value, expected",
    [("0.5", 0.5), ("1,5", 1.5), ("3", 3.0), ("skip", 1.0)],
)
def test_effort_accepts_fractional_days(value, expected):
    assert flows.advance(TaskStep.WAITING_EFFORT, value, {}).patch == {"effort": expected}


@pytest.mark.parametrize("value", ["0", "-2", "lots", "nan"])
def test_effort_rejects_non_positive_values(value):
    assert flows.advance(TaskStep.WAITING_EFFORT, value, {}) == Retry(TaskStep.WAITING_EFFORT, "invalid_effort")


def test_assignee_me_resolves_to_creator():
    outcome = flows.advance(TaskStep.WAITING_ASSIGNEE, "👤 Me", TASK_DATA)
    assert isinstance(outcome, Complete)
    assert outcome.entity.assigned_to == 10
    assert outcome.entity.effort == 1.0


def test_assignee_skip_leaves_task_unassigned():
    outcome = flows.advance(TaskStep.WAITING_ASSIGNEE, "skip", TASK_DATA)
    assert outcome.entity.assigned_to is None


def test_edit_flow_targets_task_or_project():
    task = flows.advance(EditStep.TASK_NAME, "Renamed", {"task_id": 5})
    project = flows.advance(EditStep.PROJECT_DESCRIPTION, "skip", {"project_id": 2})
    assert task.entity == EditDraft(step=EditStep.TASK_NAME, target_id=5, value="Renamed")
    assert project.entity == EditDraft(step=EditStep.PROJECT_DESCRIPTION, target_id=2, value="")


def test_step_of_resolves_stored_values():
    assert flows.step_of("waiting_task_due_date") is TaskStep.WAITING_DUE_DATE
    assert flows.step_of(ProjectStep.WAITING_NAME) is ProjectStep.WAITING_NAME
    assert flows.step_of("something_else") is None
    assert flows.step_of(None) is None


def test_advance_does_not_mutate_session_data():
    data = {"project_name": "Alpha"}
    flows.advance(ProjectStep.WAITING_DESCRIPTION, "A project", data)
    assert data == {"project_name": "Alpha"}

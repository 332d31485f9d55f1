import pytest

import db
import ui
from callbacks import CallbackKind, encode
from conftest import callback, command, make_project, register, text
from flows import EditStep, JoinStep, ProjectStep, RegistrationStep, TaskStep


def state_of(sessions, user_id):
    return sessions.get(user_id).state


async def test_start_begins_registration_for_new_user(router, sessions, transport, db_path):
    await router.dispatch(command(1, "start"))
    assert state_of(sessions, 1) is RegistrationStep.WAITING_NAME
    assert transport.texts_for(1)[-1] == ui.text("prompts", "waiting_user_name")

    for value in ("Ann", "Lee", "Designer", "skip"):
        await router.dispatch(text(1, value))

    user = db.get_user(db_path, 1)
    assert (user["name"], user["surname"], user["role"], user["contact"]) == ("Ann", "Lee", "Designer", "user1")
    assert state_of(sessions, 1) is None
    assert sessions.get(1).data == {}
    assert transport.texts_for(1)[-1] == ui.text("success", "registered", name="Ann")


async def test_start_for_registered_user_does_not_enter_flow(router, sessions, transport, db_path):
    register(db_path, 1, "Ann", "Lee")
    await router.dispatch(command(1, "start"))
    assert state_of(sessions, 1) is None
    assert transport.texts_for(1)[-1] == ui.text("info", "already_registered", name="Ann", surname="Lee")


async def test_message_with_command_marker_is_routed_as_command(router, transport):
    await router.dispatch(text(1, "/help@TaskBot"))
    assert transport.texts_for(1) == [ui.text("menus", "help")]


async def test_unknown_command_and_unknown_text(router, transport):
    await router.dispatch(command(1, "frobnicate"))
    await router.dispatch(text(1, "hello there"))
    assert transport.texts_for(1) == [ui.text("errors", "unknown_command"), ui.text("errors", "unknown_input")]


async def test_flow_step_wins_over_menu_label(router, sessions, db_path):
    register(db_path, 1, "Ann")
    sessions.set_state(1, ProjectStep.WAITING_NAME)

    await router.dispatch(text(1, ui.BUTTONS["tasks"]))

    assert state_of(sessions, 1) is ProjectStep.WAITING_DESCRIPTION
    assert sessions.get(1).data["project_name"] == ui.BUTTONS["tasks"]


async def test_menu_label_opens_menu_without_flow(router, transport, db_path):
    register(db_path, 1, "Ann")
    await router.dispatch(text(1, ui.BUTTONS["tasks"]))
    assert transport.texts_for(1) == [ui.text("menus", "tasks")]


@pytest.mark.parametrize(
    "step",
    [
        RegistrationStep.WAITING_SURNAME,
        ProjectStep.WAITING_DESCRIPTION,
        TaskStep.WAITING_DUE_DATE,
        TaskStep.WAITING_EFFORT,
        JoinStep.WAITING_JOIN_PROJECT,
        EditStep.PROJECT_NAME,
    ],
    ids=lambda s: s.value,
)
async def test_cancel_clears_session_and_shows_menu(router, sessions, transport, db_path, step):
    register(db_path, 1, "Ann")
    sessions.set_state(1, step)
    sessions.update_data(1, {"project_id": 1, "created_by": 1, "task_name": "x"})

    await router.dispatch(text(1, ui.BUTTONS["cancel"]))

    assert state_of(sessions, 1) is None
    assert sessions.get(1).data == {}
    assert transport.sent[-1][2] is not None


async def test_cancel_command_clears_session(router, sessions, transport):
    sessions.set_state(1, ProjectStep.WAITING_DESCRIPTION)
    sessions.set_data(1, "project_name", "Alpha")
    await router.dispatch(command(1, "cancel"))
    assert state_of(sessions, 1) is None
    assert sessions.get(1).data == {}


async def test_other_commands_leave_flow_state_in_place(router, sessions):
    sessions.set_state(1, ProjectStep.WAITING_DESCRIPTION)
    sessions.set_data(1, "project_name", "Alpha")
    await router.dispatch(command(1, "help"))
    assert state_of(sessions, 1) is ProjectStep.WAITING_DESCRIPTION
    assert sessions.get(1).data == {"project_name": "Alpha"}


async def test_invalid_due_date_keeps_step_and_data(router, sessions, transport, db_path):
    register(db_path, 1, "Ann")
    pid = make_project(db_path, 1, "Alpha")
    sessions.set_state(1, TaskStep.WAITING_DUE_DATE)
    sessions.update_data(1, {"project_id": pid, "created_by": 1, "task_name": "Write report"})

    await router.dispatch(text(1, "2024-02-30"))

    assert state_of(sessions, 1) is TaskStep.WAITING_DUE_DATE
    assert "task_due_date" not in sessions.get(1).data
    assert ui.text("errors", "invalid_date") in transport.texts_for(1)


async def test_project_create_end_to_end(router, sessions, transport, db_path):
    register(db_path, 1, "Ann")

    await router.dispatch(text(1, ui.BUTTONS["create_project"]))
    assert state_of(sessions, 1) is ProjectStep.WAITING_NAME
    await router.dispatch(text(1, "Alpha"))
    await router.dispatch(text(1, "skip"))

    project = db.get_project_by_name(db_path, "Alpha")
    assert project["description"] == ""
    assert project["admin_id"] == 1
    assert project["id"] in db.get_user(db_path, 1)["project_ids"]
    assert state_of(sessions, 1) is None
    assert sessions.get(1).data == {}
    assert ui.text("success", "project_created", name="Alpha") in transport.texts_for(1)


async def test_project_create_reports_partial_write(router, sessions, transport, db_path, monkeypatch):
    register(db_path, 1, "Ann")
    sessions.set_state(1, ProjectStep.WAITING_DESCRIPTION)
    sessions.set_data(1, "project_name", "Alpha")

    def broken_add_member(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(db, "add_member", broken_add_member)
    await router.dispatch(text(1, "skip"))

    assert db.get_project_by_name(db_path, "Alpha") is not None
    assert transport.texts_for(1)[-1] == ui.text("errors", "project_partial")
    assert state_of(sessions, 1) is None


async def test_task_creation_requires_a_project(router, sessions, transport, db_path):
    register(db_path, 1, "Ann")
    await router.dispatch(text(1, ui.BUTTONS["create_task"]))
    assert state_of(sessions, 1) is None
    assert transport.texts_for(1) == [ui.text("errors", "need_project")]


async def test_task_creation_with_single_project_prefills_it(router, sessions, db_path):
    register(db_path, 1, "Ann")
    pid = make_project(db_path, 1, "Alpha")
    await router.dispatch(text(1, ui.BUTTONS["create_task"]))
    assert state_of(sessions, 1) is TaskStep.WAITING_NAME
    assert sessions.get(1).data == {"project_id": pid, "created_by": 1}


async def test_task_creation_with_many_projects_asks_for_one(router, sessions, transport, db_path):
    register(db_path, 1, "Ann")
    make_project(db_path, 1, "Alpha")
    beta = make_project(db_path, 1, "Beta")

    await router.dispatch(text(1, ui.BUTTONS["create_task"]))
    assert state_of(sessions, 1) is None
    assert transport.texts_for(1) == [ui.text("menus", "choose_task_project")]

    await router.dispatch(callback(1, encode(CallbackKind.CREATE_TASK, beta)))
    assert state_of(sessions, 1) is TaskStep.WAITING_NAME
    assert sessions.get(1).data["project_id"] == beta


async def test_task_creation_end_to_end_with_member_assignee(router, sessions, transport, db_path):
    register(db_path, 1, "Ann")
    register(db_path, 2, "Bob")
    pid = make_project(db_path, 1, "Alpha")
    db.add_member(db_path, 2, pid)

    await router.dispatch(text(1, ui.BUTTONS["create_task"]))
    for value in ("Write report", "skip", "2026-10-20", "⭐ Feature", "skip", "🔴 High", "0.5"):
        await router.dispatch(text(1, value))
    assert state_of(sessions, 1) is TaskStep.WAITING_ASSIGNEE

    await router.dispatch(callback(1, encode(CallbackKind.TASK_ASSIGNEE, 2)))

    [task] = db.list_tasks_for_assignee(db_path, 2)
    assert task["name"] == "Write report"
    assert task["due_date"] == "2026-10-20"
    assert (task["task_type"], task["priority"], task["effort"]) == ("feature", "high", 0.5)
    assert task["created_by"] == 1
    assert state_of(sessions, 1) is None
    assert transport.texts_for(2) == [ui.text("notifications", "task_assigned", task="Write report", project="Alpha")]


async def test_assignee_button_outside_flow_is_stale(router, sessions, transport, db_path):
    register(db_path, 1, "Ann")
    await router.dispatch(callback(1, encode(CallbackKind.TASK_ASSIGNEE, 2)))
    assert transport.texts_for(1) == [ui.text("errors", "stale_selection")]


async def test_join_request_notifies_admin_once(router, sessions, transport, db_path):
    register(db_path, 1, "Ann")
    register(db_path, 2, "Bob")
    pid = make_project(db_path, 1, "Alpha")

    await router.dispatch(command(2, "join"))
    await router.dispatch(text(2, "Alpha"))

    assert db.get_user(db_path, 2)["pending_project_ids"] == [pid]
    assert state_of(sessions, 2) is None
    admin_text, admin_markup = transport.last(1)
    assert admin_text == ui.text("notifications", "join_request", user="Bob", project="Alpha")
    payloads = [b.callback_data for row in admin_markup.inline_keyboard for b in row]
    assert payloads == [encode(CallbackKind.APPROVE_JOIN, pid, 2), encode(CallbackKind.REJECT_JOIN, pid, 2)]

    await router.dispatch(command(2, "join"))
    await router.dispatch(text(2, "Alpha"))

    assert transport.texts_for(2)[-1] == ui.text("info", "already_pending")
    assert db.get_user(db_path, 2)["pending_project_ids"] == [pid]
    assert len(transport.texts_for(1)) == 1


async def test_join_unknown_project_reprompts(router, sessions, transport, db_path):
    register(db_path, 2, "Bob")
    await router.dispatch(command(2, "join"))
    await router.dispatch(text(2, "Nope"))
    assert state_of(sessions, 2) is JoinStep.WAITING_JOIN_PROJECT
    assert ui.text("errors", "project_name_not_found", name="Nope") in transport.texts_for(2)


async def test_join_succeeds_when_admin_is_unreachable(router, transport, db_path):
    register(db_path, 1, "Ann")
    register(db_path, 2, "Bob")
    pid = make_project(db_path, 1, "Alpha")
    transport.fail_for.add(1)

    await router.dispatch(command(2, "join"))
    await router.dispatch(text(2, "Alpha"))

    assert db.get_user(db_path, 2)["pending_project_ids"] == [pid]
    assert transport.texts_for(2)[-1] == ui.text("success", "join_requested", name="Alpha")


async def test_admin_approves_join_request(router, transport, db_path):
    register(db_path, 1, "Ann")
    register(db_path, 2, "Bob")
    pid = make_project(db_path, 1, "Alpha")
    db.add_pending(db_path, 2, pid)

    await router.dispatch(callback(1, encode(CallbackKind.APPROVE_JOIN, pid, 2)))

    assert db.get_user(db_path, 2)["project_ids"] == [pid]
    assert transport.acks == [("q1", None, False)]
    assert transport.texts_for(2) == [ui.text("notifications", "join_approved", project="Alpha")]


async def test_only_admin_can_resolve_join_request(router, transport, db_path):
    register(db_path, 1, "Ann")
    register(db_path, 2, "Bob")
    register(db_path, 3, "Cid")
    pid = make_project(db_path, 1, "Alpha")
    db.add_pending(db_path, 2, pid)

    await router.dispatch(callback(3, encode(CallbackKind.REJECT_JOIN, pid, 2)))

    assert db.get_membership(db_path, 2, pid) == db.PENDING
    assert transport.texts_for(3) == [ui.text("errors", "admin_only")]


async def test_unknown_callback_is_acknowledged(router, transport):
    await router.dispatch(callback(1, "presence:thanks"))
    assert transport.acks == [("q1", ui.text("errors", "not_implemented"), True)]
    assert transport.sent == []


async def test_callback_is_acknowledged_even_when_handler_fails(router, sessions, transport, db_path):
    register(db_path, 1, "Ann")
    sessions.set_state(1, EditStep.TASK_NAME)
    await router.dispatch(callback(1, encode(CallbackKind.VIEW_TASK, 999)))
    assert transport.acks == [("q1", None, False)]
    assert transport.texts_for(1) == [ui.text("errors", "task_not_found")]
    assert state_of(sessions, 1) is None


async def test_assignee_marks_task_done_and_admin_is_notified(router, transport, db_path):
    register(db_path, 1, "Ann")
    register(db_path, 2, "Bob")
    pid = make_project(db_path, 1, "Alpha")
    db.add_member(db_path, 2, pid)
    task_id = db.create_task(db_path, name="Write report", project_id=pid, created_by=1, assigned_to=2)

    await router.dispatch(callback(2, encode(CallbackKind.TASK_STATUS, task_id, "done")))

    task = db.get_task(db_path, task_id)
    assert task["status"] == "done"
    assert task["completed_at"] is not None
    assert transport.texts_for(1) == [
        ui.text("notifications", "task_completed", task="Write report", project="Alpha", user="Bob")
    ]


async def test_other_members_cannot_change_task_status(router, transport, db_path):
    register(db_path, 1, "Ann")
    register(db_path, 2, "Bob")
    register(db_path, 3, "Cid")
    pid = make_project(db_path, 1, "Alpha")
    db.add_member(db_path, 2, pid)
    db.add_member(db_path, 3, pid)
    task_id = db.create_task(db_path, name="Write report", project_id=pid, created_by=1, assigned_to=2)

    await router.dispatch(callback(3, encode(CallbackKind.TASK_STATUS, task_id, "in-progress")))

    assert db.get_task(db_path, task_id)["status"] == "todo"
    assert transport.texts_for(3) == [ui.text("errors", "task_update_denied")]


async def test_edit_project_name_flow(router, sessions, db_path):
    register(db_path, 1, "Ann")
    pid = make_project(db_path, 1, "Alpha")

    await router.dispatch(callback(1, encode(CallbackKind.EDIT_PROJECT_NAME, pid)))
    assert state_of(sessions, 1) is EditStep.PROJECT_NAME
    await router.dispatch(text(1, "Omega"))

    assert db.get_project(db_path, pid)["name"] == "Omega"
    assert state_of(sessions, 1) is None


async def test_delete_project_after_confirmation(router, transport, db_path):
    register(db_path, 1, "Ann")
    pid = make_project(db_path, 1, "Alpha")

    await router.dispatch(callback(1, encode(CallbackKind.DELETE_PROJECT, pid)))
    assert db.get_project(db_path, pid) is not None
    await router.dispatch(callback(1, encode(CallbackKind.CONFIRM_DELETE_PROJECT, pid), query_id="q2"))

    assert db.get_project(db_path, pid) is None
    assert ui.text("success", "project_deleted", name="Alpha") in transport.texts_for(1)


async def test_today_lists_due_and_overdue_open_tasks(router, transport, db_path):
    from datetime import date

    register(db_path, 1, "Ann")
    pid = make_project(db_path, 1, "Alpha")
    db.create_task(db_path, name="Old", project_id=pid, created_by=1, assigned_to=1, due_date=date(2026, 10, 10))
    db.create_task(db_path, name="Now", project_id=pid, created_by=1, assigned_to=1, due_date=date(2026, 10, 18))
    db.create_task(db_path, name="Later", project_id=pid, created_by=1, assigned_to=1, due_date=date(2026, 10, 25))

    await router.dispatch(command(1, "today"))

    [body] = transport.texts_for(1)
    assert "Old" in body and "Now" in body
    assert "Later" not in body
    assert body.count(ui.text("views", "overdue_mark")) == 1


async def test_unexpected_failure_clears_session(router, sessions, transport, db_path, monkeypatch):
    register(db_path, 1, "Ann")
    pid = make_project(db_path, 1, "Alpha")
    sessions.set_state(1, TaskStep.WAITING_ASSIGNEE)
    sessions.update_data(1, {"project_id": pid, "created_by": 1, "task_name": "Write report"})

    def broken_create_task(*args, **kwargs):
        raise RuntimeError("disk I/O error")

    monkeypatch.setattr(db, "create_task", broken_create_task)
    await router.dispatch(text(1, "me"))

    assert transport.texts_for(1) == [ui.text("errors", "generic")]
    assert state_of(sessions, 1) is None


def test_every_callback_kind_has_a_handler(router):
    for kind in CallbackKind:
        assert kind in router.callbacks[kind.group], kind


async def test_edit_by_former_admin_keeps_session(router, sessions, transport, db_path):
    register(db_path, 1, "Ann")
    register(db_path, 2, "Bob")
    pid = make_project(db_path, 1, "Alpha")
    sessions.set_state(1, EditStep.PROJECT_NAME)
    sessions.set_data(1, "project_id", pid)
    db.update_project(db_path, pid, admin_id=2)

    await router.dispatch(text(1, "Omega"))

    assert transport.texts_for(1) == [ui.text("errors", "admin_only")]
    assert db.get_project(db_path, pid)["name"] == "Alpha"
    assert state_of(sessions, 1) is EditStep.PROJECT_NAME
    assert sessions.get(1).data["project_id"] == pid

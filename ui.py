import html
import json
import os
import re
from enum import Enum

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, ReplyKeyboardMarkup

from callbacks import CallbackKind, encode
from flows import EditStep, JoinStep, ProjectStep, RegistrationStep, TaskStep

TEXTS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "texts")

with open(os.path.join(TEXTS_DIR, "copy.en.json"), "r", encoding="utf-8") as f:
    COPY = json.load(f)

BUTTONS = COPY["buttons"]


def text(section: str, key: str, *, raw: dict[str, str] | None = None, **params) -> str:
    """Render a copy template. ``params`` are HTML-escaped, ``raw`` fragments are already rendered."""
    template = COPY[section][key]
    if not params and not raw:
        return template
    values = {k: html.escape(str(v)) for k, v in params.items()}
    values.update(raw or {})
    return template.format(**values)


def normalize_button_text(value: str | None) -> str:
    if value is None:
        return ""
    return re.sub(r"\s+", " ", value.replace("\ufe0f", "").strip())


def full_name(user: dict | None) -> str:
    if not user:
        return ""
    return " ".join(part for part in (user.get("name"), user.get("surname")) if part)


def keyboard(rows: list[list[str]], one_time: bool = False) -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(rows, resize_keyboard=True, one_time_keyboard=one_time)


def inline(rows: list[list[tuple[str, str]]]) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(label, callback_data=data) for label, data in row] for row in rows]
    )


def main_menu_markup() -> ReplyKeyboardMarkup:
    return keyboard([[BUTTONS["projects"], BUTTONS["tasks"]], [BUTTONS["team"], BUTTONS["settings"]]])


def back_markup() -> ReplyKeyboardMarkup:
    return keyboard([[BUTTONS["back_to_menu"]]])


def cancel_markup() -> ReplyKeyboardMarkup:
    return keyboard([[BUTTONS["cancel"]]])


def skip_cancel_markup() -> ReplyKeyboardMarkup:
    return keyboard([[BUTTONS["skip"], BUTTONS["cancel"]]])


CANCEL_ONLY_STEPS = {
    RegistrationStep.WAITING_NAME,
    ProjectStep.WAITING_NAME,
    TaskStep.WAITING_NAME,
    JoinStep.WAITING_JOIN_PROJECT,
    EditStep.PROJECT_NAME,
    EditStep.TASK_NAME,
}


def step_markup(step: Enum, members: list[dict] | None = None):
    if step is TaskStep.WAITING_TASK_TYPE:
        return keyboard([[BUTTONS["feature"], BUTTONS["research"], BUTTONS["bug"]], [BUTTONS["cancel"]]])
    if step is TaskStep.WAITING_PRIORITY:
        return keyboard([[BUTTONS["low"], BUTTONS["medium"], BUTTONS["high"]], [BUTTONS["cancel"]]])
    if step in (TaskStep.WAITING_ROLE_TYPE, RegistrationStep.WAITING_ROLE):
        return keyboard(BUTTONS["roles"] + [[BUTTONS["skip"], BUTTONS["cancel"]]])
    if step is TaskStep.WAITING_ASSIGNEE:
        return assignee_markup(members or [])
    if step in CANCEL_ONLY_STEPS:
        return cancel_markup()
    return skip_cancel_markup()


def assignee_markup(members: list[dict]) -> InlineKeyboardMarkup:
    rows = [
        [(full_name(m) or str(m["user_id"]), encode(CallbackKind.TASK_ASSIGNEE, m["user_id"]))]
        for m in members
    ]
    rows.append([(BUTTONS["cancel"], encode(CallbackKind.CANCEL_TASK_CREATION))])
    return inline(rows)


def projects_menu_markup(projects: list[dict]) -> ReplyKeyboardMarkup:
    rows = [[f"{BUTTONS['project_prefix']}{p['name']}"] for p in projects]
    rows.append([BUTTONS["create_project"]])
    rows.append([BUTTONS["back_to_menu"]])
    return keyboard(rows)


def tasks_menu_markup(can_create: bool) -> ReplyKeyboardMarkup:
    rows = [
        [BUTTONS["my_tasks"]],
        [BUTTONS["todo"], BUTTONS["in_progress"]],
        [BUTTONS["done"]],
        [BUTTONS["back_to_menu"]],
    ]
    if can_create:
        rows.insert(0, [BUTTONS["create_task"]])
    return keyboard(rows)


def choose_project_markup(projects: list[dict]) -> InlineKeyboardMarkup:
    rows = [[(p["name"], encode(CallbackKind.CREATE_TASK, p["id"]))] for p in projects]
    rows.append([(BUTTONS["cancel"], encode(CallbackKind.CANCEL_TASK_CREATION))])
    return inline(rows)


def team_overview_markup(projects: list[dict]) -> InlineKeyboardMarkup:
    return inline([[(p["name"], encode(CallbackKind.VIEW_TEAM, p["id"]))] for p in projects])


def project_markup(project_id: int, is_admin: bool) -> InlineKeyboardMarkup:
    rows = []
    if is_admin:
        rows.append(
            [
                (BUTTONS["edit"], encode(CallbackKind.EDIT_PROJECT, project_id)),
                (BUTTONS["delete"], encode(CallbackKind.DELETE_PROJECT, project_id)),
            ]
        )
    rows.append(
        [
            (BUTTONS["view_team"], encode(CallbackKind.VIEW_TEAM, project_id)),
            (BUTTONS["view_tasks"], encode(CallbackKind.VIEW_TASKS, project_id)),
        ]
    )
    return inline(rows)


def edit_project_markup(project_id: int) -> InlineKeyboardMarkup:
    return inline(
        [
            [
                (BUTTONS["edit_name"], encode(CallbackKind.EDIT_PROJECT_NAME, project_id)),
                (BUTTONS["edit_description"], encode(CallbackKind.EDIT_PROJECT_DESC, project_id)),
            ],
            [(BUTTONS["back"], encode(CallbackKind.VIEW_PROJECT, project_id))],
        ]
    )


def confirm_delete_markup(project_id: int) -> InlineKeyboardMarkup:
    return inline(
        [
            [
                (BUTTONS["confirm_delete"], encode(CallbackKind.CONFIRM_DELETE_PROJECT, project_id)),
                (BUTTONS["cancel_delete"], encode(CallbackKind.CANCEL_DELETE_PROJECT, project_id)),
            ]
        ]
    )


def team_markup(project_id: int, is_admin: bool) -> InlineKeyboardMarkup:
    rows = []
    if is_admin:
        rows.append([(BUTTONS["add_member"], encode(CallbackKind.ADD_MEMBER, project_id))])
    rows.append([(BUTTONS["back"], encode(CallbackKind.BACK_TO_PROJECT, project_id))])
    return inline(rows)


def add_member_markup(project_id: int, users: list[dict]) -> InlineKeyboardMarkup:
    rows = [
        [(full_name(u) or str(u["user_id"]), encode(CallbackKind.ADD_MEMBER_CONFIRM, project_id, u["user_id"]))]
        for u in users
    ]
    rows.append([(BUTTONS["back"], encode(CallbackKind.VIEW_TEAM, project_id))])
    return inline(rows)


def join_request_markup(project_id: int, user_id: int) -> InlineKeyboardMarkup:
    return inline(
        [
            [
                (BUTTONS["approve"], encode(CallbackKind.APPROVE_JOIN, project_id, user_id)),
                (BUTTONS["reject"], encode(CallbackKind.REJECT_JOIN, project_id, user_id)),
            ]
        ]
    )


def task_list_markup(tasks: list[dict], project_id: int | None = None) -> InlineKeyboardMarkup:
    rows = [[(t["name"], encode(CallbackKind.VIEW_TASK, t["id"]))] for t in tasks]
    if project_id is not None:
        rows.append([(BUTTONS["back"], encode(CallbackKind.BACK_TO_PROJECT, project_id))])
    return inline(rows)


def task_markup(task: dict, can_update: bool, is_admin: bool) -> InlineKeyboardMarkup:
    rows = []
    if can_update:
        status_row = []
        for status, label in (("todo", "todo"), ("in-progress", "in_progress"), ("done", "done")):
            if task["status"] != status:
                status_row.append((BUTTONS[label], encode(CallbackKind.TASK_STATUS, task["id"], status)))
        rows.append(status_row)
        if is_admin:
            rows.append(
                [
                    (BUTTONS["edit"], encode(CallbackKind.EDIT_TASK, task["id"])),
                    (BUTTONS["delete"], encode(CallbackKind.DELETE_TASK, task["id"])),
                ]
            )
    rows.append([(BUTTONS["back"], encode(CallbackKind.BACK_TO_TASKS))])
    return inline(rows)


def profile_markup() -> InlineKeyboardMarkup:
    return inline(
        [
            [(BUTTONS["edit_profile"], encode(CallbackKind.EDIT_PROFILE))],
            [(BUTTONS["back_to_menu"], encode(CallbackKind.BACK_TO_MENU))],
        ]
    )

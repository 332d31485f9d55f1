import logging
from datetime import date
from functools import partial

import db
import flows
import ui
from callbacks import Callback, CallbackKind, Group, decode
from errors import AuthorizationError, NotFoundError, ValidationError
from flows import (
    Advance,
    Cancel,
    Complete,
    EditDraft,
    EditStep,
    JoinDraft,
    JoinStep,
    ProjectDraft,
    ProjectStep,
    RegistrationStep,
    Retry,
    TaskDraft,
    TaskStep,
    UserDraft,
)
from sessions import SessionStore
from transport import CallbackQuery, Command, Delivery, Message, command_name

LOGGER = logging.getLogger(__name__)

COMMANDS = ("start", "help", "projects", "tasks", "today", "profile", "join", "cancel")
STATUS_ORDER = (("todo", "todo"), ("in-progress", "in_progress"), ("done", "done"))


def _day(value) -> str:
    if not value:
        return ""
    return str(value)[:10]


class Router:
    """Routes commands, button callbacks and free text to menus and conversation flows.

    Precedence is fixed: commands first, then callback queries, then free text. For free
    text an active flow step always wins over a menu label, so a user who types "Tasks"
    while naming a task gets a task called "Tasks".
    """

    def __init__(self, sessions: SessionStore, transport, db_path: str, today=date.today):
        self.sessions = sessions
        self.transport = transport
        self.db_path = db_path
        self.today = today

        self.commands = {
            "start": self.cmd_start,
            "help": self.cmd_help,
            "projects": self.cmd_projects,
            "tasks": self.cmd_tasks,
            "today": self.cmd_today,
            "profile": self.cmd_profile,
            "join": self.cmd_join,
            "cancel": self.cmd_cancel,
        }
        self.callbacks = {
            Group.PROJECT: {
                CallbackKind.EDIT_PROJECT: self.cb_edit_project,
                CallbackKind.DELETE_PROJECT: self.cb_delete_project,
                CallbackKind.VIEW_PROJECT: self.cb_view_project,
                CallbackKind.BACK_TO_PROJECT: self.cb_view_project,
                CallbackKind.CONFIRM_DELETE_PROJECT: self.cb_confirm_delete_project,
                CallbackKind.CANCEL_DELETE_PROJECT: self.cb_cancel_delete_project,
                CallbackKind.EDIT_PROJECT_NAME: partial(self.cb_edit_project_field, EditStep.PROJECT_NAME),
                CallbackKind.EDIT_PROJECT_DESC: partial(self.cb_edit_project_field, EditStep.PROJECT_DESCRIPTION),
                CallbackKind.VIEW_TASKS: self.cb_view_project_tasks,
            },
            Group.TEAM: {
                CallbackKind.VIEW_TEAM: self.cb_view_team,
                CallbackKind.APPROVE_JOIN: self.cb_approve_join,
                CallbackKind.REJECT_JOIN: self.cb_reject_join,
                CallbackKind.ADD_MEMBER: self.cb_add_member,
                CallbackKind.ADD_MEMBER_CONFIRM: self.cb_add_member_confirm,
                CallbackKind.EDIT_PROFILE: self.cb_edit_profile,
                CallbackKind.BACK_TO_MENU: self.cb_back_to_menu,
            },
            Group.TASK: {
                CallbackKind.CREATE_TASK: self.cb_create_task,
                CallbackKind.CANCEL_TASK_CREATION: self.cb_cancel_task_creation,
                CallbackKind.TASK_STATUS: self.cb_task_status,
                CallbackKind.EDIT_TASK: self.cb_edit_task,
                CallbackKind.DELETE_TASK: self.cb_delete_task,
                CallbackKind.BACK_TO_TASKS: self.cb_back_to_tasks,
                CallbackKind.VIEW_TASK: self.cb_view_task,
                CallbackKind.TASK_ASSIGNEE: self.cb_task_assignee,
            },
        }
        buttons = ui.BUTTONS
        self.menu = {
            ui.normalize_button_text(buttons["projects"]): self.show_projects_menu,
            ui.normalize_button_text(buttons["tasks"]): self.show_tasks_menu,
            ui.normalize_button_text(buttons["my_tasks"]): self.show_my_tasks,
            ui.normalize_button_text(buttons["todo"]): partial(self.show_my_tasks, status="todo"),
            ui.normalize_button_text(buttons["in_progress"]): partial(self.show_my_tasks, status="in-progress"),
            ui.normalize_button_text(buttons["done"]): partial(self.show_my_tasks, status="done"),
            ui.normalize_button_text(buttons["create_task"]): self.start_task_creation,
            ui.normalize_button_text(buttons["create_project"]): self.start_project_creation,
            ui.normalize_button_text(buttons["team"]): self.show_team_overview,
            ui.normalize_button_text(buttons["settings"]): self.show_profile,
            ui.normalize_button_text(buttons["back_to_menu"]): self.back_to_menu,
        }

    # -- entry point -----------------------------------------------------------------

    async def dispatch(self, event: Command | CallbackQuery | Message) -> None:
        if isinstance(event, Message):
            name = command_name(event.text)
            if name is not None:
                event = Command(name=name, chat_id=event.chat_id, user_id=event.user_id, username=event.username)

        callback = None
        if isinstance(event, CallbackQuery):
            callback = decode(event.data)
            if callback is None:
                await self.transport.answer_callback(event.id, ui.text("errors", "not_implemented"), show_alert=True)
                return
            await self.transport.answer_callback(event.id)

        async with self.sessions.lock(event.user_id):
            try:
                if isinstance(event, Command):
                    await self.handle_command(event)
                elif isinstance(event, CallbackQuery):
                    await self.handle_callback(event, callback)
                else:
                    await self.handle_text(event)
            except NotFoundError as e:
                self.sessions.clear(event.user_id)
                await self.reply(event.chat_id, ui.text("errors", e.key, **e.params))
            except (AuthorizationError, ValidationError) as e:
                await self.reply(event.chat_id, ui.text("errors", e.key, **e.params))
            except Exception:
                LOGGER.exception("handler failed for user %s", event.user_id)
                self.sessions.clear(event.user_id)
                await self.reply(event.chat_id, ui.text("errors", "generic"))

    async def handle_command(self, cmd: Command) -> None:
        handler = self.commands.get(cmd.name)
        if handler is None:
            await self.reply(cmd.chat_id, ui.text("errors", "unknown_command"))
            return
        await handler(cmd)

    async def handle_callback(self, query: CallbackQuery, callback: Callback) -> None:
        handler = self.callbacks[callback.kind.group][callback.kind]
        await handler(query, callback)

    async def handle_text(self, msg: Message) -> None:
        session = self.sessions.get(msg.user_id)
        step = flows.step_of(session.state)
        if step is not None:
            await self.handle_flow_input(msg, step, dict(session.data))
            return

        handler = self.menu.get(ui.normalize_button_text(msg.text))
        if handler is not None:
            await handler(msg.chat_id, msg.user_id)
            return

        prefix = ui.BUTTONS["project_prefix"]
        if msg.text.startswith(prefix) and msg.text[len(prefix):].strip():
            await self.show_project_by_name(msg.chat_id, msg.user_id, msg.text[len(prefix):].strip())
            return

        await self.reply(msg.chat_id, ui.text("errors", "unknown_input"))

    # -- outbound --------------------------------------------------------------------

    async def reply(self, chat_id: int, text: str, markup=None) -> Delivery:
        return await self.transport.send_message(chat_id, text, reply_markup=markup)

    async def notify(self, chat_id: int, text: str, markup=None) -> Delivery:
        delivery = await self.transport.send_message(chat_id, text, reply_markup=markup)
        if not delivery.ok:
            LOGGER.warning("notification to %s not delivered: %s", chat_id, delivery.error)
        return delivery

    async def prompt(self, chat_id: int, user_id: int, step) -> None:
        members = None
        if step is TaskStep.WAITING_ASSIGNEE:
            project_id = self.sessions.get(user_id).data.get("project_id")
            members = db.list_project_members(self.db_path, project_id) if project_id else []
        await self.reply(chat_id, ui.text("prompts", step.value), ui.step_markup(step, members))

    # -- lookups ---------------------------------------------------------------------

    def require_user(self, user_id: int) -> dict:
        user = db.get_user(self.db_path, user_id)
        if user is None:
            raise NotFoundError("not_registered")
        return user

    def require_project(self, project_id: int) -> dict:
        project = db.get_project(self.db_path, project_id)
        if project is None:
            raise NotFoundError("project_not_found")
        return project

    def require_task(self, task_id: int) -> dict:
        task = db.get_task(self.db_path, task_id)
        if task is None:
            raise NotFoundError("task_not_found")
        return task

    def require_admin(self, project_id: int, user_id: int) -> dict:
        project = self.require_project(project_id)
        if project["admin_id"] != user_id:
            raise AuthorizationError("admin_only")
        return project

    def require_member(self, project_id: int, user_id: int) -> dict:
        project = self.require_project(project_id)
        if project["admin_id"] != user_id and db.get_membership(self.db_path, user_id, project_id) != db.MEMBER:
            raise AuthorizationError("no_project_access")
        return project

    def project_names(self, tasks: list[dict]) -> dict[int, str]:
        ids = sorted({t["project_id"] for t in tasks})
        return {p["id"]: p["name"] for p in db.list_projects(self.db_path, ids)}

    # -- commands --------------------------------------------------------------------

    async def cmd_start(self, cmd: Command) -> None:
        await self.reply(cmd.chat_id, ui.text("menus", "welcome"), ui.main_menu_markup())
        user = db.get_user(self.db_path, cmd.user_id)
        if user is not None:
            await self.reply(
                cmd.chat_id,
                ui.text("info", "already_registered", name=user["name"], surname=user["surname"] or ""),
            )
            return
        self.sessions.set_state(cmd.user_id, RegistrationStep.WAITING_NAME)
        self.sessions.set_data(cmd.user_id, "username", cmd.username or "")
        await self.prompt(cmd.chat_id, cmd.user_id, RegistrationStep.WAITING_NAME)

    async def cmd_help(self, cmd: Command) -> None:
        await self.reply(cmd.chat_id, ui.text("menus", "help"))

    async def cmd_projects(self, cmd: Command) -> None:
        await self.show_projects_menu(cmd.chat_id, cmd.user_id)

    async def cmd_tasks(self, cmd: Command) -> None:
        await self.show_tasks_menu(cmd.chat_id, cmd.user_id)

    async def cmd_today(self, cmd: Command) -> None:
        await self.show_today_tasks(cmd.chat_id, cmd.user_id)

    async def cmd_profile(self, cmd: Command) -> None:
        await self.show_profile(cmd.chat_id, cmd.user_id)

    async def cmd_join(self, cmd: Command) -> None:
        self.require_user(cmd.user_id)
        self.sessions.set_state(cmd.user_id, JoinStep.WAITING_JOIN_PROJECT)
        await self.prompt(cmd.chat_id, cmd.user_id, JoinStep.WAITING_JOIN_PROJECT)

    async def cmd_cancel(self, cmd: Command) -> None:
        self.sessions.clear(cmd.user_id)
        await self.reply(cmd.chat_id, ui.text("cancelled", "command"), ui.main_menu_markup())

    # -- menus and views -------------------------------------------------------------

    async def back_to_menu(self, chat_id: int, user_id: int) -> None:
        self.sessions.clear(user_id)
        await self.reply(chat_id, ui.text("menus", "main"), ui.main_menu_markup())

    async def show_projects_menu(self, chat_id: int, user_id: int) -> None:
        self.sessions.set_state(user_id, None)
        user = self.require_user(user_id)
        projects = db.list_projects(self.db_path, user["project_ids"])
        await self.reply(chat_id, ui.text("menus", "projects"), ui.projects_menu_markup(projects))

    async def show_tasks_menu(self, chat_id: int, user_id: int) -> None:
        self.sessions.set_state(user_id, None)
        user = self.require_user(user_id)
        await self.reply(chat_id, ui.text("menus", "tasks"), ui.tasks_menu_markup(bool(user["project_ids"])))

    async def show_team_overview(self, chat_id: int, user_id: int) -> None:
        user = self.require_user(user_id)
        projects = db.list_projects(self.db_path, user["project_ids"])
        if not projects:
            await self.reply(chat_id, ui.text("info", "no_projects"), ui.back_markup())
            return
        await self.reply(chat_id, ui.text("menus", "team_overview"), ui.team_overview_markup(projects))

    async def show_my_tasks(self, chat_id: int, user_id: int, status: str | None = None) -> None:
        self.require_user(user_id)
        tasks = db.list_tasks_for_assignee(self.db_path, user_id, status=status)
        if not tasks:
            await self.reply(chat_id, ui.text("info", "no_tasks"), ui.back_markup())
            return
        names = self.project_names(tasks)
        unknown = ui.text("views", "unknown_project")
        sections = [ui.text("views", "my_tasks_title")]
        for task_status, label in STATUS_ORDER:
            group = [t for t in tasks if t["status"] == task_status]
            if not group:
                continue
            lines = [ui.text("views", "status_section", label=ui.BUTTONS[label], count=len(group))]
            for idx, task in enumerate(group, start=1):
                lines.append(
                    ui.text(
                        "views",
                        "task_line",
                        index=idx,
                        name=task["name"],
                        project=names.get(task["project_id"], unknown),
                        due=_day(task["due_date"]) or ui.text("views", "no_due_date"),
                    )
                )
            sections.append("\n".join(lines))
        await self.reply(chat_id, "\n\n".join(sections), ui.task_list_markup(tasks))

    async def show_today_tasks(self, chat_id: int, user_id: int) -> None:
        self.require_user(user_id)
        today = self.today().isoformat()
        tasks = [
            t
            for t in db.list_tasks_for_assignee(self.db_path, user_id)
            if t["status"] != "done" and t["due_date"] and t["due_date"] <= today
        ]
        if not tasks:
            await self.reply(chat_id, ui.text("info", "no_today_tasks"), ui.back_markup())
            return
        names = self.project_names(tasks)
        unknown = ui.text("views", "unknown_project")
        lines = [ui.text("views", "today_title")]
        for idx, task in enumerate(tasks, start=1):
            overdue = ui.text("views", "overdue_mark") if task["due_date"] < today else ""
            lines.append(
                ui.text(
                    "views",
                    "today_line",
                    raw={"overdue": overdue},
                    index=idx,
                    name=task["name"],
                    project=names.get(task["project_id"], unknown),
                    status=task["status"],
                    due=_day(task["due_date"]),
                )
            )
        await self.reply(chat_id, "\n\n".join(lines), ui.back_markup())

    async def show_profile(self, chat_id: int, user_id: int) -> None:
        user = self.require_user(user_id)
        projects = db.list_projects(self.db_path, user["project_ids"])
        project_lines = "\n".join(f"- {p['name']}" for p in projects) or ui.text("views", "profile_no_projects")
        await self.reply(
            chat_id,
            ui.text(
                "views",
                "profile",
                name=ui.full_name(user),
                role=user["role"] or "-",
                contact=user["contact"] or "-",
                joined=_day(user["created_at"]),
                projects=project_lines,
            ),
            ui.profile_markup(),
        )

    async def show_project_by_name(self, chat_id: int, user_id: int, name: str) -> None:
        user = self.require_user(user_id)
        for project in db.list_projects(self.db_path, user["project_ids"]):
            if project["name"] == name:
                await self.show_project(chat_id, user_id, project["id"])
                return
        raise NotFoundError("project_not_found")

    async def show_project(self, chat_id: int, user_id: int, project_id: int) -> None:
        project = self.require_member(project_id, user_id)
        is_admin = project["admin_id"] == user_id
        members = db.list_project_members(self.db_path, project_id)
        description = ""
        if project["description"]:
            description = ui.text("views", "project_description", description=project["description"])
        body = ui.text(
            "views",
            "project",
            raw={"description": description},
            name=project["name"],
            members=len(members),
            work_days=", ".join(project["work_days"]),
            created=_day(project["created_at"]),
        )
        if is_admin:
            body += ui.text("views", "project_admin_note")
        await self.reply(chat_id, body, ui.project_markup(project_id, is_admin))

    async def show_team(self, chat_id: int, user_id: int, project_id: int) -> None:
        project = self.require_member(project_id, user_id)
        members = db.list_project_members(self.db_path, project_id)
        lines = [ui.text("views", "team_title", name=project["name"])]
        if not members:
            lines.append(ui.text("views", "team_empty"))
        for idx, member in enumerate(members, start=1):
            role = f" - {member['role']}" if member["role"] else ""
            admin = ui.text("views", "admin_suffix") if member["user_id"] == project["admin_id"] else ""
            lines.append(ui.text("views", "team_line", index=idx, name=ui.full_name(member), role=role, admin=admin))
        is_admin = project["admin_id"] == user_id
        await self.reply(chat_id, "\n".join(lines), ui.team_markup(project_id, is_admin))

    async def show_task(self, chat_id: int, user_id: int, task_id: int) -> None:
        task = self.require_task(task_id)
        project = self.require_project(task["project_id"])
        if project["admin_id"] != user_id and db.get_membership(self.db_path, user_id, project["id"]) != db.MEMBER:
            raise AuthorizationError("no_task_access")
        is_admin = project["admin_id"] == user_id
        is_assignee = task["assigned_to"] == user_id
        assignee = db.get_user(self.db_path, task["assigned_to"]) if task["assigned_to"] else None
        creator = db.get_user(self.db_path, task["created_by"])
        description = ""
        if task["description"]:
            description = ui.text("views", "task_description", description=task["description"])
        completed = ""
        if task["completed_at"]:
            completed = ui.text("views", "task_completed_line", completed=_day(task["completed_at"]))
        body = ui.text(
            "views",
            "task",
            raw={"description": description, "completed": completed},
            name=task["name"],
            project=project["name"],
            status=task["status"],
            task_type=task["task_type"],
            priority=task["priority"],
            due=_day(task["due_date"]) or ui.text("views", "no_due_date"),
            effort=f"{task['effort']:g}",
            role_type=task["role_type"] or "-",
            assignee=ui.full_name(assignee) or ui.text("views", "unassigned"),
            creator=ui.full_name(creator) or "-",
            created=_day(task["created_at"]),
        )
        await self.reply(chat_id, body, ui.task_markup(task, is_admin or is_assignee, is_admin))

    # -- flow entry points -----------------------------------------------------------

    async def start_project_creation(self, chat_id: int, user_id: int) -> None:
        self.require_user(user_id)
        self.sessions.set_state(user_id, ProjectStep.WAITING_NAME)
        await self.prompt(chat_id, user_id, ProjectStep.WAITING_NAME)

    async def start_task_creation(self, chat_id: int, user_id: int) -> None:
        user = self.require_user(user_id)
        project_ids = user["project_ids"]
        if not project_ids:
            await self.reply(chat_id, ui.text("errors", "need_project"))
            return
        if len(project_ids) == 1:
            self.begin_task(user_id, project_ids[0])
            await self.prompt(chat_id, user_id, TaskStep.WAITING_NAME)
            return
        projects = db.list_projects(self.db_path, project_ids)
        await self.reply(chat_id, ui.text("menus", "choose_task_project"), ui.choose_project_markup(projects))

    def begin_task(self, user_id: int, project_id: int) -> None:
        self.sessions.set_state(user_id, TaskStep.WAITING_NAME)
        self.sessions.set_data(user_id, "project_id", project_id)
        self.sessions.set_data(user_id, "created_by", user_id)

    # -- flow input ------------------------------------------------------------------

    async def handle_flow_input(self, msg: Message, step, data: dict) -> None:
        outcome = flows.advance(step, msg.text, data)
        flow = flows.flow_of(step)

        if isinstance(outcome, Cancel):
            self.sessions.clear(msg.user_id)
            await self.reply(msg.chat_id, ui.text("cancelled", flow.name), ui.main_menu_markup())
            if flow is flows.PROJECT_CREATE:
                await self.show_projects_menu(msg.chat_id, msg.user_id)
            elif flow is flows.TASK_CREATE:
                await self.show_tasks_menu(msg.chat_id, msg.user_id)
            return

        if isinstance(outcome, Retry):
            await self.reply(msg.chat_id, ui.text("errors", outcome.error))
            await self.prompt(msg.chat_id, msg.user_id, outcome.step)
            return

        if isinstance(outcome, Advance):
            self.sessions.update_data(msg.user_id, outcome.patch)
            self.sessions.set_state(msg.user_id, outcome.step)
            await self.prompt(msg.chat_id, msg.user_id, outcome.step)
            return

        if isinstance(outcome, Complete):
            try:
                await self.complete(msg.chat_id, msg.user_id, outcome.entity)
            except ValidationError as e:
                await self.reply(msg.chat_id, ui.text("errors", e.key, **e.params))
                await self.prompt(msg.chat_id, msg.user_id, step)

    async def complete(self, chat_id: int, user_id: int, entity) -> None:
        if isinstance(entity, UserDraft):
            await self.complete_registration(chat_id, user_id, entity)
        elif isinstance(entity, ProjectDraft):
            await self.complete_project(chat_id, user_id, entity)
        elif isinstance(entity, TaskDraft):
            await self.complete_task(chat_id, user_id, entity)
        elif isinstance(entity, JoinDraft):
            await self.complete_join(chat_id, user_id, entity)
        elif isinstance(entity, EditDraft):
            await self.complete_edit(chat_id, user_id, entity)
        else:
            raise TypeError(f"unexpected draft {entity!r}")

    async def complete_registration(self, chat_id: int, user_id: int, draft: UserDraft) -> None:
        db.upsert_user(
            self.db_path,
            user_id,
            name=draft.name,
            surname=draft.surname,
            role=draft.role,
            contact=draft.contact,
        )
        self.sessions.clear(user_id)
        if draft.editing:
            await self.reply(chat_id, ui.text("success", "profile_updated"), ui.main_menu_markup())
        else:
            await self.reply(chat_id, ui.text("success", "registered", name=draft.name), ui.main_menu_markup())

    async def complete_project(self, chat_id: int, user_id: int, draft: ProjectDraft) -> None:
        self.require_user(user_id)
        project_id = db.create_project(self.db_path, draft.name, draft.description, user_id)
        try:
            db.add_member(self.db_path, user_id, project_id)
        except Exception:
            LOGGER.exception("project %s created but membership for %s failed", project_id, user_id)
            self.sessions.clear(user_id)
            await self.reply(chat_id, ui.text("errors", "project_partial"), ui.main_menu_markup())
            return
        self.sessions.clear(user_id)
        await self.reply(chat_id, ui.text("success", "project_created", name=draft.name))
        await self.show_projects_menu(chat_id, user_id)

    async def complete_task(self, chat_id: int, user_id: int, draft: TaskDraft) -> None:
        project = self.require_member(draft.project_id, user_id)
        db.create_task(
            self.db_path,
            name=draft.name,
            description=draft.description,
            project_id=draft.project_id,
            created_by=draft.created_by,
            assigned_to=draft.assigned_to,
            due_date=draft.due_date,
            task_type=draft.task_type,
            role_type=draft.role_type,
            priority=draft.priority,
            effort=draft.effort,
        )
        self.sessions.clear(user_id)
        await self.reply(chat_id, ui.text("success", "task_created", name=draft.name))
        if draft.assigned_to is not None and draft.assigned_to != user_id:
            await self.notify(
                draft.assigned_to,
                ui.text("notifications", "task_assigned", task=draft.name, project=project["name"]),
            )
        await self.show_tasks_menu(chat_id, user_id)

    async def complete_join(self, chat_id: int, user_id: int, draft: JoinDraft) -> None:
        project = db.get_project_by_name(self.db_path, draft.project_name)
        if project is None:
            raise ValidationError("project_name_not_found", name=draft.project_name)
        user = self.require_user(user_id)
        status = db.get_membership(self.db_path, user_id, project["id"])
        if status == db.MEMBER:
            self.sessions.clear(user_id)
            await self.reply(chat_id, ui.text("info", "already_member"), ui.main_menu_markup())
            return
        if status == db.PENDING:
            self.sessions.clear(user_id)
            await self.reply(chat_id, ui.text("info", "already_pending"), ui.main_menu_markup())
            return

        db.add_pending(self.db_path, user_id, project["id"])
        await self.notify(
            project["admin_id"],
            ui.text("notifications", "join_request", user=ui.full_name(user), project=project["name"]),
            ui.join_request_markup(project["id"], user_id),
        )
        self.sessions.clear(user_id)
        await self.reply(chat_id, ui.text("success", "join_requested", name=project["name"]), ui.main_menu_markup())

    async def complete_edit(self, chat_id: int, user_id: int, draft: EditDraft) -> None:
        if draft.step is EditStep.TASK_NAME:
            task = self.require_task(draft.target_id)
            self.require_admin(task["project_id"], user_id)
            self.sessions.clear(user_id)
            db.update_task(self.db_path, task["id"], name=draft.value)
            await self.reply(chat_id, ui.text("success", "task_updated"))
            await self.show_task(chat_id, user_id, task["id"])
            return

        project = self.require_admin(draft.target_id, user_id)
        self.sessions.clear(user_id)
        field = "name" if draft.step is EditStep.PROJECT_NAME else "description"
        db.update_project(self.db_path, project["id"], **{field: draft.value})
        await self.reply(chat_id, ui.text("success", "project_updated"))
        await self.show_project(chat_id, user_id, project["id"])

    # -- project callbacks -----------------------------------------------------------

    async def cb_edit_project(self, query: CallbackQuery, cb: Callback) -> None:
        project_id = cb.args[0]
        self.require_admin(project_id, query.user_id)
        await self.reply(query.chat_id, ui.text("menus", "edit_project"), ui.edit_project_markup(project_id))

    async def cb_delete_project(self, query: CallbackQuery, cb: Callback) -> None:
        project = self.require_admin(cb.args[0], query.user_id)
        await self.reply(
            query.chat_id,
            ui.text("menus", "confirm_delete_project", name=project["name"]),
            ui.confirm_delete_markup(project["id"]),
        )

    async def cb_view_project(self, query: CallbackQuery, cb: Callback) -> None:
        await self.show_project(query.chat_id, query.user_id, cb.args[0])

    async def cb_confirm_delete_project(self, query: CallbackQuery, cb: Callback) -> None:
        project = self.require_admin(cb.args[0], query.user_id)
        db.delete_project(self.db_path, project["id"])
        self.sessions.clear(query.user_id)
        await self.reply(query.chat_id, ui.text("success", "project_deleted", name=project["name"]))
        await self.show_projects_menu(query.chat_id, query.user_id)

    async def cb_cancel_delete_project(self, query: CallbackQuery, cb: Callback) -> None:
        await self.reply(query.chat_id, ui.text("success", "delete_cancelled"))
        await self.show_project(query.chat_id, query.user_id, cb.args[0])

    async def cb_edit_project_field(self, step: EditStep, query: CallbackQuery, cb: Callback) -> None:
        project = self.require_admin(cb.args[0], query.user_id)
        self.sessions.clear(query.user_id)
        self.sessions.set_state(query.user_id, step)
        self.sessions.set_data(query.user_id, "project_id", project["id"])
        await self.prompt(query.chat_id, query.user_id, step)

    async def cb_view_project_tasks(self, query: CallbackQuery, cb: Callback) -> None:
        project = self.require_member(cb.args[0], query.user_id)
        tasks = db.list_project_tasks(self.db_path, project["id"])
        if not tasks:
            await self.reply(query.chat_id, ui.text("info", "no_project_tasks"), ui.task_list_markup([], project["id"]))
            return
        lines = [ui.text("views", "project_tasks_title", name=project["name"])]
        for idx, task in enumerate(tasks, start=1):
            lines.append(
                ui.text(
                    "views",
                    "task_line",
                    index=idx,
                    name=task["name"],
                    project=project["name"],
                    due=_day(task["due_date"]) or ui.text("views", "no_due_date"),
                )
            )
        await self.reply(query.chat_id, "\n".join(lines), ui.task_list_markup(tasks, project["id"]))

    # -- team callbacks --------------------------------------------------------------

    async def cb_view_team(self, query: CallbackQuery, cb: Callback) -> None:
        await self.show_team(query.chat_id, query.user_id, cb.args[0])

    async def _resolve_join(self, query: CallbackQuery, cb: Callback, approve: bool) -> None:
        project_id, requester_id = cb.args
        project = self.require_admin(project_id, query.user_id)
        requester = db.get_user(self.db_path, requester_id)
        if requester is None:
            raise NotFoundError("user_not_found")
        if approve:
            changed = db.approve_pending(self.db_path, requester_id, project_id)
        else:
            changed = db.reject_pending(self.db_path, requester_id, project_id)
        if not changed:
            await self.reply(query.chat_id, ui.text("errors", "no_pending_request"))
            return

        name = ui.full_name(requester)
        if approve:
            await self.reply(query.chat_id, ui.text("success", "join_approved_admin", user=name, project=project["name"]))
            await self.notify(requester_id, ui.text("notifications", "join_approved", project=project["name"]))
        else:
            await self.reply(query.chat_id, ui.text("success", "join_rejected_admin", user=name, project=project["name"]))
            await self.notify(requester_id, ui.text("notifications", "join_rejected", project=project["name"]))

    async def cb_approve_join(self, query: CallbackQuery, cb: Callback) -> None:
        await self._resolve_join(query, cb, approve=True)

    async def cb_reject_join(self, query: CallbackQuery, cb: Callback) -> None:
        await self._resolve_join(query, cb, approve=False)

    async def cb_add_member(self, query: CallbackQuery, cb: Callback) -> None:
        project = self.require_admin(cb.args[0], query.user_id)
        candidates = db.list_users_not_in_project(self.db_path, project["id"])
        if not candidates:
            await self.reply(query.chat_id, ui.text("info", "no_candidates"))
            return
        await self.reply(
            query.chat_id,
            ui.text("menus", "add_member", name=project["name"]),
            ui.add_member_markup(project["id"], candidates),
        )

    async def cb_add_member_confirm(self, query: CallbackQuery, cb: Callback) -> None:
        project_id, member_id = cb.args
        project = self.require_admin(project_id, query.user_id)
        member = db.get_user(self.db_path, member_id)
        if member is None:
            raise NotFoundError("user_not_found")
        db.add_member(self.db_path, member_id, project_id)
        await self.reply(
            query.chat_id,
            ui.text("success", "member_added", user=ui.full_name(member), project=project["name"]),
        )
        await self.notify(member_id, ui.text("notifications", "member_added", project=project["name"]))

    async def cb_edit_profile(self, query: CallbackQuery, cb: Callback) -> None:
        self.require_user(query.user_id)
        self.sessions.clear(query.user_id)
        self.sessions.set_state(query.user_id, RegistrationStep.WAITING_NAME)
        self.sessions.set_data(query.user_id, "editing", True)
        self.sessions.set_data(query.user_id, "username", query.username or "")
        await self.prompt(query.chat_id, query.user_id, RegistrationStep.WAITING_NAME)

    async def cb_back_to_menu(self, query: CallbackQuery, cb: Callback) -> None:
        await self.back_to_menu(query.chat_id, query.user_id)

    # -- task callbacks --------------------------------------------------------------

    async def cb_create_task(self, query: CallbackQuery, cb: Callback) -> None:
        project_id = cb.args[0]
        user = self.require_user(query.user_id)
        if project_id not in user["project_ids"]:
            raise AuthorizationError("no_project_access")
        self.sessions.clear(query.user_id)
        self.begin_task(query.user_id, project_id)
        await self.prompt(query.chat_id, query.user_id, TaskStep.WAITING_NAME)

    async def cb_cancel_task_creation(self, query: CallbackQuery, cb: Callback) -> None:
        self.sessions.clear(query.user_id)
        await self.reply(query.chat_id, ui.text("cancelled", "task"))
        await self.show_tasks_menu(query.chat_id, query.user_id)

    async def cb_task_status(self, query: CallbackQuery, cb: Callback) -> None:
        task_id, new_status = cb.args
        task = self.require_task(task_id)
        project = self.require_project(task["project_id"])
        user = self.require_user(query.user_id)
        if project["id"] not in user["project_ids"]:
            raise AuthorizationError("no_task_access")
        is_admin = project["admin_id"] == query.user_id
        is_assignee = task["assigned_to"] == query.user_id
        if not is_admin and not is_assignee:
            raise AuthorizationError("task_update_denied")

        old_status = task["status"]
        db.set_task_status(self.db_path, task_id, new_status)
        await self.show_task(query.chat_id, query.user_id, task_id)

        if new_status == "done" and old_status != "done" and not is_admin:
            await self.notify(
                project["admin_id"],
                ui.text(
                    "notifications",
                    "task_completed",
                    task=task["name"],
                    project=project["name"],
                    user=ui.full_name(user),
                ),
            )

    async def cb_edit_task(self, query: CallbackQuery, cb: Callback) -> None:
        task = self.require_task(cb.args[0])
        self.require_admin(task["project_id"], query.user_id)
        self.sessions.clear(query.user_id)
        self.sessions.set_state(query.user_id, EditStep.TASK_NAME)
        self.sessions.set_data(query.user_id, "task_id", task["id"])
        await self.prompt(query.chat_id, query.user_id, EditStep.TASK_NAME)

    async def cb_delete_task(self, query: CallbackQuery, cb: Callback) -> None:
        task = self.require_task(cb.args[0])
        self.require_admin(task["project_id"], query.user_id)
        db.delete_task(self.db_path, task["id"])
        await self.reply(query.chat_id, ui.text("success", "task_deleted", name=task["name"]))

    async def cb_back_to_tasks(self, query: CallbackQuery, cb: Callback) -> None:
        await self.show_tasks_menu(query.chat_id, query.user_id)

    async def cb_view_task(self, query: CallbackQuery, cb: Callback) -> None:
        await self.show_task(query.chat_id, query.user_id, cb.args[0])

    async def cb_task_assignee(self, query: CallbackQuery, cb: Callback) -> None:
        session = self.sessions.get(query.user_id)
        if flows.step_of(session.state) is not TaskStep.WAITING_ASSIGNEE:
            await self.reply(query.chat_id, ui.text("errors", "stale_selection"))
            return
        assignee_id = cb.args[0]
        project_id = session.data["project_id"]
        if db.get_membership(self.db_path, assignee_id, project_id) != db.MEMBER:
            await self.reply(query.chat_id, ui.text("errors", "not_a_member"))
            await self.prompt(query.chat_id, query.user_id, TaskStep.WAITING_ASSIGNEE)
            return
        data = {**session.data, "assignee": assignee_id}
        await self.complete_task(query.chat_id, query.user_id, flows.build_task(TaskStep.WAITING_ASSIGNEE, data))

"""Linear conversation flows.

Each flow is a table of steps. A step names the session data key it fills, the parser that
validates the raw text, and the step that follows (None for the terminal step). ``advance``
is pure: it never touches the session store or the database, the router applies the outcome.
"""
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable

from errors import ValidationError

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TASK_TYPES = ("feature", "research", "bug")
PRIORITIES = ("low", "medium", "high")
ASSIGN_SELF = "me"
DEFAULT_EFFORT = 1.0


class RegistrationStep(str, Enum):
    WAITING_NAME = "waiting_user_name"
    WAITING_SURNAME = "waiting_user_surname"
    WAITING_ROLE = "waiting_user_role"
    WAITING_CONTACT = "waiting_user_contact"


class ProjectStep(str, Enum):
    WAITING_NAME = "waiting_project_name"
    WAITING_DESCRIPTION = "waiting_project_description"


class TaskStep(str, Enum):
    WAITING_NAME = "waiting_task_name"
    WAITING_DESCRIPTION = "waiting_task_description"
    WAITING_DUE_DATE = "waiting_task_due_date"
    WAITING_TASK_TYPE = "waiting_task_type"
    WAITING_ROLE_TYPE = "waiting_task_role_type"
    WAITING_PRIORITY = "waiting_task_priority"
    WAITING_EFFORT = "waiting_task_effort"
    WAITING_ASSIGNEE = "waiting_task_assignee"


class JoinStep(str, Enum):
    WAITING_JOIN_PROJECT = "waiting_join_project"


class EditStep(str, Enum):
    PROJECT_NAME = "editing_project_name"
    PROJECT_DESCRIPTION = "editing_project_description"
    TASK_NAME = "editing_task_name"


@dataclass(frozen=True)
class UserDraft:
    name: str
    surname: str
    role: str
    contact: str
    editing: bool = False


@dataclass(frozen=True)
class ProjectDraft:
    name: str
    description: str


@dataclass(frozen=True)
class TaskDraft:
    name: str
    description: str
    due_date: date | None
    task_type: str
    role_type: str
    priority: str
    effort: float
    project_id: int
    created_by: int
    assigned_to: int | None


@dataclass(frozen=True)
class JoinDraft:
    project_name: str


@dataclass(frozen=True)
class EditDraft:
    step: EditStep
    target_id: int
    value: str


@dataclass(frozen=True)
class Advance:
    step: Enum
    patch: dict[str, Any]


@dataclass(frozen=True)
class Retry:
    step: Enum
    error: str


@dataclass(frozen=True)
class Cancel:
    pass


@dataclass(frozen=True)
class Complete:
    entity: Any
    patch: dict[str, Any]


def _word(text: str) -> str:
    # Button labels carry an emoji prefix; compare on the bare words.
    return re.sub(r"[^\w\s.,-]", "", text or "").strip().lower()


def is_cancel(text: str) -> bool:
    return _word(text) == "cancel"


def is_skip(text: str) -> bool:
    return _word(text) == "skip"


def required_text(text: str) -> str:
    value = (text or "").strip()
    if not value:
        raise ValidationError("empty_value")
    return value


def optional_text(text: str) -> str:
    if is_skip(text):
        return ""
    return (text or "").strip()


def optional_contact(text: str) -> str | None:
    if is_skip(text):
        return None
    return (text or "").strip()


def parse_due_date(text: str) -> date | None:
    if is_skip(text):
        return None
    value = (text or "").strip()
    if not DATE_RE.match(value):
        raise ValidationError("invalid_date")
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError("invalid_date") from None


def _choice(options: tuple[str, ...], error: str) -> Callable[[str], str]:
    def parse(text: str) -> str:
        value = _word(text)
        if value not in options:
            raise ValidationError(error)
        return value

    return parse


parse_task_type = _choice(TASK_TYPES, "invalid_task_type")
parse_priority = _choice(PRIORITIES, "invalid_priority")


def parse_effort(text: str) -> float:
    if is_skip(text):
        return DEFAULT_EFFORT
    try:
        value = float((text or "").strip().replace(",", "."))
    except ValueError:
        raise ValidationError("invalid_effort") from None
    if not value > 0 or value == float("inf"):
        raise ValidationError("invalid_effort")
    return value


def parse_assignee(text: str) -> str | None:
    if is_skip(text):
        return None
    if _word(text) == ASSIGN_SELF:
        return ASSIGN_SELF
    raise ValidationError("invalid_assignee")


@dataclass(frozen=True)
class Field:
    key: str
    parse: Callable[[str], Any]
    next: Enum | None = None


@dataclass(frozen=True)
class Flow:
    name: str
    steps: dict[Enum, Field]
    build: Callable[[Enum, dict[str, Any]], Any]


def build_user(step: Enum, data: dict[str, Any]) -> UserDraft:
    contact = data.get("contact")
    if contact is None:
        contact = data.get("username") or ""
    return UserDraft(
        name=data["name"],
        surname=data.get("surname", ""),
        role=data.get("role", ""),
        contact=contact,
        editing=bool(data.get("editing")),
    )


def build_project(step: Enum, data: dict[str, Any]) -> ProjectDraft:
    return ProjectDraft(name=data["project_name"], description=data.get("project_description", ""))


def build_task(step: Enum, data: dict[str, Any]) -> TaskDraft:
    assignee = data.get("assignee")
    if assignee == ASSIGN_SELF:
        assignee = data["created_by"]
    return TaskDraft(
        name=data["task_name"],
        description=data.get("task_description", ""),
        due_date=data.get("task_due_date"),
        task_type=data.get("task_type", "feature"),
        role_type=data.get("role_type", ""),
        priority=data.get("priority", "medium"),
        effort=data.get("effort", DEFAULT_EFFORT),
        project_id=data["project_id"],
        created_by=data["created_by"],
        assigned_to=assignee,
    )


def build_join(step: Enum, data: dict[str, Any]) -> JoinDraft:
    return JoinDraft(project_name=data["join_project_name"])


def build_edit(step: Enum, data: dict[str, Any]) -> EditDraft:
    target_key = "task_id" if step is EditStep.TASK_NAME else "project_id"
    return EditDraft(step=step, target_id=data[target_key], value=data["new_value"])


REGISTRATION = Flow(
    "registration",
    {
        RegistrationStep.WAITING_NAME: Field("name", required_text, RegistrationStep.WAITING_SURNAME),
        RegistrationStep.WAITING_SURNAME: Field("surname", optional_text, RegistrationStep.WAITING_ROLE),
        RegistrationStep.WAITING_ROLE: Field("role", optional_text, RegistrationStep.WAITING_CONTACT),
        RegistrationStep.WAITING_CONTACT: Field("contact", optional_contact),
    },
    build_user,
)

PROJECT_CREATE = Flow(
    "project",
    {
        ProjectStep.WAITING_NAME: Field("project_name", required_text, ProjectStep.WAITING_DESCRIPTION),
        ProjectStep.WAITING_DESCRIPTION: Field("project_description", optional_text),
    },
    build_project,
)

TASK_CREATE = Flow(
    "task",
    {
        TaskStep.WAITING_NAME: Field("task_name", required_text, TaskStep.WAITING_DESCRIPTION),
        TaskStep.WAITING_DESCRIPTION: Field("task_description", optional_text, TaskStep.WAITING_DUE_DATE),
        TaskStep.WAITING_DUE_DATE: Field("task_due_date", parse_due_date, TaskStep.WAITING_TASK_TYPE),
        TaskStep.WAITING_TASK_TYPE: Field("task_type", parse_task_type, TaskStep.WAITING_ROLE_TYPE),
        TaskStep.WAITING_ROLE_TYPE: Field("role_type", optional_text, TaskStep.WAITING_PRIORITY),
        TaskStep.WAITING_PRIORITY: Field("priority", parse_priority, TaskStep.WAITING_EFFORT),
        TaskStep.WAITING_EFFORT: Field("effort", parse_effort, TaskStep.WAITING_ASSIGNEE),
        TaskStep.WAITING_ASSIGNEE: Field("assignee", parse_assignee),
    },
    build_task,
)

JOIN_PROJECT = Flow(
    "join",
    {JoinStep.WAITING_JOIN_PROJECT: Field("join_project_name", required_text)},
    build_join,
)

EDIT = Flow(
    "edit",
    {
        EditStep.PROJECT_NAME: Field("new_value", required_text),
        EditStep.PROJECT_DESCRIPTION: Field("new_value", optional_text),
        EditStep.TASK_NAME: Field("new_value", required_text),
    },
    build_edit,
)

FLOWS: dict[type, Flow] = {
    RegistrationStep: REGISTRATION,
    ProjectStep: PROJECT_CREATE,
    TaskStep: TASK_CREATE,
    JoinStep: JOIN_PROJECT,
    EditStep: EDIT,
}

_BY_VALUE: dict[str, Enum] = {step.value: step for enum in FLOWS for step in enum}


def step_of(state: Any) -> Enum | None:
    if state is None:
        return None
    if isinstance(state, Enum):
        return state if type(state) in FLOWS else None
    return _BY_VALUE.get(state)


def flow_of(step: Enum) -> Flow:
    return FLOWS[type(step)]


def advance(step: Enum, text: str, data: dict[str, Any]) -> Advance | Retry | Cancel | Complete:
    if is_cancel(text):
        return Cancel()
    flow = flow_of(step)
    field = flow.steps[step]
    try:
        value = field.parse(text)
    except ValidationError as exc:
        return Retry(step, exc.key)
    patch = {field.key: value}
    if field.next is None:
        return Complete(flow.build(step, {**data, **patch}), patch)
    return Advance(field.next, patch)

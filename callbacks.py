from dataclasses import dataclass
from enum import Enum


class Group(str, Enum):
    PROJECT = "project"
    TEAM = "team"
    TASK = "task"


class CallbackKind(Enum):
    # value: (payload prefix, group, number of ":"-separated arguments)
    EDIT_PROJECT = ("edit_project", Group.PROJECT, 1)
    DELETE_PROJECT = ("delete_project", Group.PROJECT, 1)
    VIEW_PROJECT = ("view_project", Group.PROJECT, 1)
    BACK_TO_PROJECT = ("back_to_project", Group.PROJECT, 1)
    CONFIRM_DELETE_PROJECT = ("confirm_delete_project", Group.PROJECT, 1)
    CANCEL_DELETE_PROJECT = ("cancel_delete_project", Group.PROJECT, 1)
    EDIT_PROJECT_NAME = ("edit_project_name", Group.PROJECT, 1)
    EDIT_PROJECT_DESC = ("edit_project_desc", Group.PROJECT, 1)
    VIEW_TASKS = ("view_tasks", Group.PROJECT, 1)

    VIEW_TEAM = ("view_team", Group.TEAM, 1)
    APPROVE_JOIN = ("approve_join", Group.TEAM, 2)
    REJECT_JOIN = ("reject_join", Group.TEAM, 2)
    ADD_MEMBER = ("add_member", Group.TEAM, 1)
    ADD_MEMBER_CONFIRM = ("add_member_confirm", Group.TEAM, 2)
    EDIT_PROFILE = ("edit_profile", Group.TEAM, 0)
    BACK_TO_MENU = ("back_to_menu", Group.TEAM, 0)

    CREATE_TASK = ("create_task", Group.TASK, 1)
    CANCEL_TASK_CREATION = ("cancel_task_creation", Group.TASK, 0)
    TASK_STATUS = ("task_status", Group.TASK, 2)
    EDIT_TASK = ("edit_task", Group.TASK, 1)
    DELETE_TASK = ("delete_task", Group.TASK, 1)
    BACK_TO_TASKS = ("back_to_tasks", Group.TASK, 0)
    VIEW_TASK = ("view_task", Group.TASK, 1)
    TASK_ASSIGNEE = ("task_assignee", Group.TASK, 1)

    @property
    def prefix(self) -> str:
        return self.value[0]

    @property
    def group(self) -> Group:
        return self.value[1]

    @property
    def arity(self) -> int:
        return self.value[2]


_BY_PREFIX = {kind.prefix: kind for kind in CallbackKind}


TASK_STATUSES = ("todo", "in-progress", "done")


@dataclass(frozen=True)
class Callback:
    kind: CallbackKind
    args: tuple[int | str, ...] = ()


def encode(kind: CallbackKind, *args) -> str:
    if len(args) != kind.arity:
        raise ValueError(f"{kind.prefix} takes {kind.arity} arguments, got {len(args)}")
    return ":".join([kind.prefix, *(str(a) for a in args)])


def _parse_args(kind: CallbackKind, raw: list[str]) -> tuple[int | str, ...] | None:
    out: list[int | str] = []
    for idx, value in enumerate(raw):
        if kind is CallbackKind.TASK_STATUS and idx == 1:
            if value not in TASK_STATUSES:
                return None
            out.append(value)
            continue
        try:
            out.append(int(value))
        except ValueError:
            return None
    return tuple(out)


def decode(data: str | None) -> Callback | None:
    if not data:
        return None
    prefix, *raw = data.split(":")
    kind = _BY_PREFIX.get(prefix)
    if kind is None or len(raw) != kind.arity:
        return None
    args = _parse_args(kind, raw)
    if args is None:
        return None
    return Callback(kind, args)

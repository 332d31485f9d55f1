class BotError(Exception):
    """Base for errors that are shown to the user through a copy key from texts/copy.en.json."""

    def __init__(self, key: str, **params):
        super().__init__(key)
        self.key = key
        self.params = params


class ValidationError(BotError):
    """Malformed input; the current flow step re-prompts and the session is left as is."""


class NotFoundError(BotError):
    """A referenced user, project or task is missing; the session is cleared."""


class AuthorizationError(BotError):
    """The caller is not the admin or assignee required for the action."""

from __future__ import annotations


class LeagueError(Exception):
    pass


class ConfigValidationError(LeagueError):
    def __init__(self, section: str, errors: list[dict[str, str]]) -> None:
        self.section = section
        self.errors = errors
        super().__init__(f"Invalid {section} configuration ({len(errors)} error(s))")


class UnknownSectionError(LeagueError):
    def __init__(self, section: str) -> None:
        self.section = section
        super().__init__(f"Unknown configuration section: {section}")


class PlayerNotFoundError(LeagueError):
    def __init__(self, discord_id: int) -> None:
        self.discord_id = discord_id
        super().__init__(f"Player not found: {discord_id}")


class VersionConflictError(LeagueError):
    def __init__(self, section: str, expected: int, actual: int) -> None:
        self.section = section
        self.expected = expected
        self.actual = actual
        super().__init__(f"{section} was modified (expected version {expected}, found {actual})")


class ConfirmationRequiredError(LeagueError):
    pass


class ExportError(LeagueError):
    pass


class SeasonActionError(LeagueError):
    """A season action failed.

    ``partial`` is False when nothing was persisted. When it is True the
    steps in ``completed_steps`` are already committed and ``failed`` lists
    what still needs to happen; rerunning the action finishes the job.
    """

    def __init__(
        self,
        action: str,
        message: str,
        *,
        partial: bool = False,
        completed_steps: list[str] | None = None,
        failed: list[str] | None = None,
    ) -> None:
        self.action = action
        self.partial = partial
        self.completed_steps = completed_steps or []
        self.failed = failed or []
        super().__init__(message)

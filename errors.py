# errors.py


class SchoolBotError(Exception):
    """Base class for the bot's own failures."""


class SourceUnavailable(SchoolBotError):
    """The workbook could not be fetched after every attempt."""


class CorruptSource(SchoolBotError):
    """The fetched bytes are not a readable .xlsx workbook."""


class InvalidArgument(SchoolBotError, ValueError):
    pass


class NotFound(SchoolBotError, LookupError):
    pass


class AuthorizationDenied(SchoolBotError):
    pass

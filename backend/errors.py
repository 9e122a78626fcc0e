class CheckbellError(Exception):
    """Base class for errors surfaced to API callers."""


class NotFoundError(CheckbellError):
    """Referenced template, item or index does not exist."""


class InvalidInputError(CheckbellError):
    """Request is missing required fields or carries unusable values."""

"""
Shared error taxonomy.

Client and service modules define their own upstream errors next to the code
that raises them; the errors here cross module boundaries.
"""


class ValidationError(ValueError):
    """Invalid input rejected before any I/O takes place."""
    pass


class NotFoundError(LookupError):
    """Referenced node, relationship, pipeline or run does not exist."""
    pass


class PipelineNotFoundError(NotFoundError):
    """No manifest stored under the requested pipeline id."""
    pass


class DuplicateRunError(Exception):
    """A run with the same run id is already registered."""
    pass

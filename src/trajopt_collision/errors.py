"""Exception hierarchy for collision term construction and evaluation."""


class TrajoptCollisionError(Exception):
    """Base class for all errors raised by this package."""


class CollisionTermError(TrajoptCollisionError, ValueError):
    """A collision term or evaluator could not be constructed.

    Raised before the term is added to a problem, so the optimizer never
    runs with a half-built term.
    """


class CollisionQueryError(TrajoptCollisionError, RuntimeError):
    """A geometry query could not be performed."""

"""
The error taxonomy used throughout `qgenpy`. Each error derives from `QGenError`
and from the builtin exception that best describes the same condition, so that
callers catching builtins (e.g. `KeyError`, `ValueError`) keep working.
"""


class QGenError(Exception):
    """
    Base class for all errors raised by `qgenpy`.
    """
    pass


class FormatError(QGenError, ValueError):
    """
    Raised when binary or tabular input is malformed, truncated, or its layout
    does not match the declared number of individuals / markers.
    """
    pass


class NotFoundError(QGenError, KeyError):
    """
    Raised when a requested marker, individual or chromosome is absent.
    """

    def __str__(self):
        # KeyError wraps its message in quotes, which is unhelpful here:
        return Exception.__str__(self)


class AlreadyExistsError(QGenError, FileExistsError):
    """
    Raised when an output artifact exists and overwriting was not requested.
    """
    pass


class NotBuiltError(QGenError, FileNotFoundError):
    """
    Raised when a derived artifact (e.g. an LD block) is requested before it was
    constructed, or when the stored artifact is incomplete.
    """
    pass


class InvalidConfigError(QGenError, ValueError):
    """
    Raised when sampler, filter or builder parameters are outside their valid ranges.
    """
    pass


class NumericInstabilityError(QGenError, ArithmeticError):
    """
    Raised when an intermediate quantity becomes non-finite (or a variance collapses)
    during an iterative computation.

    :ivar iteration: The iteration at which the instability was detected.
    :ivar last_valid_state: A snapshot of the last state that passed all checks.
    """

    def __init__(self, message, iteration=None, last_valid_state=None):
        super().__init__(message)
        self.iteration = iteration
        self.last_valid_state = last_valid_state


class MissingColumnError(QGenError, KeyError):
    """
    Raised when a table does not carry the columns a component requires.

    :ivar missing: The list of missing column names.
    """

    def __init__(self, missing, context=None):
        self.missing = list(missing)
        msg = f"Missing required column(s): {', '.join(self.missing)}"
        if context is not None:
            msg += f" ({context})"
        super().__init__(msg)

    def __str__(self):
        return Exception.__str__(self)

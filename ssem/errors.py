class SSEMError(Exception):
    """Base class for errors raised by ssem."""


class ConfigurationError(SSEMError, ValueError):
    """
    Inconsistent or malformed model specification.

    Raised while a ModelSpec is built or updated (dimension mismatch,
    conflicting shared parameters, unknown names, inconsistent linear
    constraints), always before any recursion starts.
    """


class NumericalError(SSEMError, ArithmeticError):
    """
    A matrix that has to be inverted is singular or ill-conditioned.

    Attributes
    ----------
    where : str
        Name of the matrix that failed, e.g. "S_t" or "V_{t+1|t}".
    t : int or None
        Time step at which the failure occurred (1-based, as in y_1..y_T).
    iteration : int or None
        EM iteration, filled in by the estimator when it re-raises.
    condition : float or None
        Condition number of the offending matrix.
    """

    def __init__(self, message, where=None, t=None, iteration=None, condition=None):
        super().__init__(message)
        self.where = where
        self.t = t
        self.iteration = iteration
        self.condition = condition

    def __str__(self):
        msg = super().__str__()
        details = []
        if self.where is not None:
            details.append(f"matrix={self.where}")
        if self.t is not None:
            details.append(f"t={self.t}")
        if self.iteration is not None:
            details.append(f"iteration={self.iteration}")
        if self.condition is not None:
            details.append(f"cond={self.condition:.3e}")
        return f"{msg} ({', '.join(details)})" if details else msg


class ConvergenceWarning(UserWarning):
    """EM stopped at the iteration cap or after a log-likelihood decrease."""

"""pyhpfem.exceptions"""
import logging


logger = logging.getLogger(__name__)


class HpFemError(Exception):
    """
    Base class for all pyhpfem-specific errors.

    Args:
        message: The error message describing what went wrong
        context: Optional additional context about where the error occurred
    """

    def __init__(self, message: str, context: str | None = None) -> None:
        self.message = message
        self.context = context
        logger.debug("pyhpfem exception: %s", self._format_message())
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if self.context:
            return f"{self.message} (Context: {self.context})"
        return self.message


class ConfigurationError(HpFemError, ValueError):
    """
    Raised when the adaptivity engine is called with inconsistent arguments.

    Examples:
        - number of solutions or selectors differs from the number of spaces
        - more components than MAX_COMPONENTS
        - unknown total/element error flags or strategy code
        - unrefinement requested for a component count other than two
    """


class AdaptivityStateError(HpFemError, RuntimeError):
    """
    Raised when an operation needs element errors that are missing or stale,
    e.g. calling ``Adapt.adapt`` before ``Adapt.calc_err_est``.
    """

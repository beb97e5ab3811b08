"""pyhpfem.adapt.parameters
Error normalisation flags and adaptivity-step parameters.
"""
from dataclasses import dataclass
from enum import IntFlag

from pyhpfem.exceptions import ConfigurationError

__all__ = ["ErrorFlags", "TOTAL_ERROR_MASK", "ELEMENT_ERROR_MASK",
           "DEFAULT_ERROR_FLAGS", "split_error_flags", "AdaptivityParameters"]


class ErrorFlags(IntFlag):
    TOTAL_ERROR_REL = 0x01      # total error divided by the reference norm
    TOTAL_ERROR_ABS = 0x02
    ELEMENT_ERROR_REL = 0x10    # element errors divided by their component's norm
    ELEMENT_ERROR_ABS = 0x20


TOTAL_ERROR_MASK = 0x0F
ELEMENT_ERROR_MASK = 0xF0
DEFAULT_ERROR_FLAGS = ErrorFlags.TOTAL_ERROR_REL | ErrorFlags.ELEMENT_ERROR_REL


def split_error_flags(error_flags: int):
    """
    Validate ``error_flags`` and return ``(total_relative, element_relative)``.

    Exactly one total and one element convention must be selected.
    """
    total = int(error_flags) & TOTAL_ERROR_MASK
    element = int(error_flags) & ELEMENT_ERROR_MASK
    if total not in (ErrorFlags.TOTAL_ERROR_REL, ErrorFlags.TOTAL_ERROR_ABS):
        raise ConfigurationError(f"Unknown total error type 0x{total:02X}.",
                                 context=f"error_flags=0x{int(error_flags):02X}")
    if element not in (ErrorFlags.ELEMENT_ERROR_REL, ErrorFlags.ELEMENT_ERROR_ABS):
        raise ConfigurationError(f"Unknown element error type 0x{element:02X}.",
                                 context=f"error_flags=0x{int(error_flags):02X}")
    return total == ErrorFlags.TOTAL_ERROR_REL, element == ErrorFlags.ELEMENT_ERROR_REL


@dataclass
class AdaptivityParameters:
    """
    Parameters of one adaptivity step.

    strategy 0: refine until the processed error exceeds ``sqrt(threshold)``
        times the total, keeping elements of equal error together.
    strategy 1: refine elements whose error exceeds ``threshold`` times the largest one.
    strategy 2: refine elements whose error exceeds ``threshold``.
    strategy 3: as 1, but stop once ``1.5 * to_be_processed`` has been processed.
    regularize: maximum level jump between neighbours, negative to disable.
    """
    threshold: float = 0.3
    strategy: int = 0
    regularize: int = -1
    to_be_processed: float = 0.0

    def __post_init__(self):
        if self.strategy not in (0, 1, 2, 3):
            raise ConfigurationError(f"Unknown adaptivity strategy {self.strategy!r}.",
                                     context="expected 0, 1, 2 or 3")
        if self.threshold < 0:
            raise ConfigurationError(f"Threshold must be non-negative, got {self.threshold}.")
        if self.to_be_processed < 0:
            raise ConfigurationError(
                f"to_be_processed must be non-negative, got {self.to_be_processed}.")
        self.threshold = float(self.threshold)
        self.regularize = int(self.regularize)

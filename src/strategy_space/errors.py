"""Exception types raised by the strategy-space pipeline."""

from __future__ import annotations

from typing import Optional, Tuple


class StrategySpaceError(Exception):
    """Base error. Carries the failing stage and, where known, trial/shape/column."""

    def __init__(
        self,
        message: str,
        stage: str = "",
        trial: Optional[int] = None,
        shape: Optional[Tuple[int, ...]] = None,
        column: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.trial = trial
        self.shape = tuple(shape) if shape is not None else None
        self.column = column

    def __str__(self) -> str:
        parts = []
        if self.stage:
            parts.append(f"[{self.stage}]")
        parts.append(self.message)
        details = []
        if self.trial is not None:
            details.append(f"trial={self.trial}")
        if self.shape is not None:
            details.append("shape=" + "×".join(str(s) for s in self.shape))
        if self.column is not None:
            details.append(f"column={self.column}")
        if details:
            parts.append(f"({', '.join(details)})")
        return " ".join(parts)


class ConfigError(StrategySpaceError):
    pass


class InputTableError(StrategySpaceError):
    pass


class ImputationError(StrategySpaceError):
    pass


class DegenerateMatrixError(StrategySpaceError):
    pass


class PermutationInputError(StrategySpaceError):
    pass

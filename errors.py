"""
Exception taxonomy for market clearing and redispatch runs.

All errors are fatal to the run that raises them; nothing in this package
retries. The caller fixes configuration or input data and runs again.
"""

from __future__ import annotations

from typing import List, Optional, Sequence


class ModelError(Exception):
    """Base class for every error raised by the market model."""


class ConfigurationError(ModelError):
    """Invalid setup: missing slack bus, bad time horizon, inconsistent market scope."""


class NetworkError(ModelError):
    """Network matrices cannot be derived (e.g. singular reduced susceptance matrix)."""


class DataContractViolation(ModelError, KeyError):
    """
    A required key is missing from a Parameters map at model-build time.

    This points at a gap in upstream validation, so the offending mapping and
    entity id are kept on the exception.
    """

    def __init__(self, mapping: str, entity: object, detail: str = ""):
        self.mapping = mapping
        self.entity = entity
        msg = f"Parameters.{mapping} has no entry for {entity!r}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


class SolverError(ModelError):
    """
    The solver did not return an optimal solution for a sub-horizon.

    Attributes
    ----------
    time_range : range or None
        Sub-horizon that failed.
    stage : str
        "DayAhead", "Prosumer" or "Redispatch".
    status : str
        Solver status name (e.g. "INFEASIBLE").
    families : list of str
        Constraint/variable families implicated in the failure.
    """

    def __init__(
        self,
        message: str,
        time_range: Optional[range] = None,
        stage: str = "",
        status: str = "",
        families: Optional[Sequence[str]] = None,
    ):
        self.time_range = time_range
        self.stage = stage
        self.status = status
        self.families: List[str] = list(families or [])
        parts = [message]
        if time_range is not None and len(time_range) > 0:
            parts.append(f"sub-horizon t{time_range[0]}-t{time_range[-1]}")
        if stage:
            parts.append(f"stage {stage}")
        if status:
            parts.append(f"status {status}")
        if self.families:
            parts.append("implicated: " + ", ".join(self.families))
        super().__init__("; ".join(parts))

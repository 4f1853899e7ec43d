"""Write-once store of step output parameters.

Outputs are recorded exactly once per step, when the step reaches a
terminal state that contributes outputs (Succeeded or Tolerated). Later
readers see an immutable snapshot.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from choreo_pipeline.errors import OutputAlreadyRecordedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepOutputs:
    """Recorded outputs of one step.

    Attributes:
        step_name: Step that produced the outputs.
        values: Output parameter name -> value.
        tolerated: True if the step failed but was tolerated by continueOn.
    """

    step_name: str
    values: Mapping[str, str]
    tolerated: bool = False


class OutputStore:
    """Per-step key/value store of declared outputs."""

    def __init__(self) -> None:
        self._records: dict[str, StepOutputs] = {}

    def record(
        self,
        step_name: str,
        values: Mapping[str, str],
        *,
        declared: Iterable[str] = (),
        tolerated: bool = False,
    ) -> StepOutputs:
        """Record a step's outputs.

        For tolerated steps, every declared output that was not produced
        is stored as an empty string.

        Raises:
            OutputAlreadyRecordedError: If the step already has outputs.
        """
        if step_name in self._records:
            raise OutputAlreadyRecordedError(step_name)

        data = {k: str(v) for k, v in values.items()}
        if tolerated:
            for name in declared:
                data.setdefault(name, "")

        record = StepOutputs(
            step_name=step_name,
            values=MappingProxyType(data),
            tolerated=tolerated,
        )
        self._records[step_name] = record
        logger.debug(f"Recorded outputs for {step_name}: {sorted(data)}")
        return record

    def has(self, step_name: str) -> bool:
        return step_name in self._records

    def get(self, step_name: str) -> StepOutputs | None:
        return self._records.get(step_name)

    def lookup(self, step_name: str, key: str) -> str | None:
        """Value of one output parameter, or None if absent."""
        record = self._records.get(step_name)
        if record is None:
            return None
        return record.values.get(key)

    def snapshot(self) -> Mapping[str, Mapping[str, str]]:
        """Read-only view of all recorded outputs."""
        return MappingProxyType({name: rec.values for name, rec in self._records.items()})

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, step_name: object) -> bool:
        return step_name in self._records

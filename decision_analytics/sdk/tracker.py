"""
Atom execution tracker.

Times a block of atom evaluation code and records the outcome without
changing its behavior.
"""

import time
from types import TracebackType
from typing import Any, Dict, Optional, Type

from ..core.atoms import AtomUsageAnalyzer


class AtomTracker:
    """Context manager that records one atom execution.

    Exceptions raised inside the block are recorded as failures and then
    propagated unchanged, so tracking never hides an error.

    Example:
        with AtomTracker(analyzer, "geo_check", "rule-7", "spring_sale") as tracker:
            tracker.output = evaluate(...)
    """

    def __init__(
        self,
        analyzer: AtomUsageAnalyzer,
        atom_id: str,
        rule_id: str,
        campaign_id: str,
        input_data: Any = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        """Initialize the tracker.

        Args:
            analyzer: Analyzer that receives the execution (required)
            atom_id: Atom identifier (required)
            rule_id: Rule the atom is evaluated for (required)
            campaign_id: Campaign the rule belongs to (required)
            input_data: Input passed to the atom (optional)
            context: Evaluation context (optional)

        Raises:
            ValueError: If any identifier is missing or empty
        """
        for name, value in (("atom_id", atom_id), ("rule_id", rule_id), ("campaign_id", campaign_id)):
            if not value or not value.strip():
                raise ValueError(f"{name} is required and cannot be empty")

        self.analyzer = analyzer
        self.atom_id = atom_id
        self.rule_id = rule_id
        self.campaign_id = campaign_id
        self.input_data = input_data
        self.context = context
        self.output: Any = None
        self.execution_time: Optional[float] = None
        self._started: Optional[float] = None

    def __enter__(self) -> "AtomTracker":
        self._started = time.perf_counter()
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> bool:
        self.execution_time = (time.perf_counter() - self._started) * 1000

        self.analyzer.record_atom_usage(
            atom_id=self.atom_id,
            rule_id=self.rule_id,
            campaign_id=self.campaign_id,
            execution_time=self.execution_time,
            success=exc is None,
            input_data=self.input_data,
            output_data=self.output,
            error_message=str(exc) if exc is not None else None,
            context=self.context,
        )
        # Never suppress the block's exception
        return False

from __future__ import annotations

import logging
from typing import Any, Collection

from resolvelib import BaseReporter

from package_resolution_engine.model.records import PackageRecord


class SolverReporter(BaseReporter):
    """
    Progress hooks for the search, reusing resolvelib's reporter vocabulary.

    Requirements are MatchSpecs, candidates are PackageRecords or None for "not
    installed", and the state passed to ``ending`` is the final selection.
    """

    def starting(self) -> None:
        logging.log(logging.INFO, "Starting resolution...")

    def starting_round(self, index: int) -> None:
        logging.log(logging.DEBUG, f"Starting round {index}")

    def ending_round(self, index: int, state: Any) -> None:
        logging.log(logging.DEBUG, f"Ending round {index}")

    def ending(self, state: Any) -> None:
        logging.log(logging.INFO, f"Resolution complete. {state}")

    def adding_requirement(self, requirement: Any, parent: Any) -> None:
        logging.log(logging.DEBUG, f"Adding requirement: {requirement} (from {parent or 'request'})")

    def pinning(self, candidate: PackageRecord | None) -> None:
        logging.log(logging.DEBUG, f"Pinning candidate: {candidate}")

    def rejecting_candidate(self, criterion: Any, candidate: Any) -> None:
        logging.log(logging.DEBUG, f"Rejecting candidate: {candidate} (criterion={criterion})")

    def resolving_conflicts(self, causes: Collection[Any]) -> None:
        logging.log(logging.DEBUG, f"Resolving conflicts: {', '.join(str(c) for c in causes)}")

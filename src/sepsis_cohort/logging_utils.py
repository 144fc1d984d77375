"""
Logging Utilities for the Cohort Extraction Pipeline

This module provides nested, timestamped console logging so the call flow of
the extraction pipeline can be followed stage by stage.

Every pipeline function logs a start line on entry and a finish line on exit.
Lines written in between are indented one level deeper, which produces a tree
of the run in the console. The cohort filter additionally reports how many
subjects and stays survive each stage.
"""
from datetime import datetime


class NestedLogger:
    """
    A console logger that indents output by call depth.

    Each log_start increases the indentation for subsequent lines and each
    log_end decreases it again, so nested pipeline steps appear as a tree.

    Attributes:
        _nesting_level (int): Current indentation level (0 = no indentation)
    """

    def __init__(self):
        self._nesting_level = 0

    def _get_timestamp(self) -> str:
        """Timestamp in format 'HH:MM:SS.mmm'."""
        return datetime.now().strftime('%H:%M:%S.%f')[:-3]

    def _get_indent(self) -> str:
        return "    " * self._nesting_level

    def _print(self, message: str) -> None:
        print(f"{self._get_indent()}{self._get_timestamp()} {message}")

    def log_start(self, function_name: str) -> None:
        """
        Log the start of a pipeline step and nest everything logged after it.

        Args:
            function_name (str): Name of the step being started

        Example output:
            10:30:45.123 Started extract_data
                10:30:45.124 Started apply_cohort_filter
        """
        self._print(f"Started {function_name}")
        self._nesting_level += 1

    def log_end(self, function_name: str) -> None:
        """
        Log the end of a pipeline step at the indentation of its start line.

        Args:
            function_name (str): Name of the step being completed
        """
        if self._nesting_level > 0:
            self._nesting_level -= 1
        self._print(f"Finished {function_name}")

    def log_info(self, message: str) -> None:
        """Log a free-text line at the current nesting level."""
        self._print(message)

    def log_counts(self, step: str, n_subjects: int, n_stays: int) -> None:
        """
        Log the number of distinct subjects and stays left after a step.

        Example output:
                10:30:46.001 After excluding pregnancies: 1203 subjects, 1203 stays
        """
        self._print(f"{step}: {n_subjects} subjects, {n_stays} stays")


# Shared across modules so nesting stays consistent for the whole run
logger = NestedLogger()

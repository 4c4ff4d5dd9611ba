"""Data collaborators used by engines.

- ``type_infer``: best-guess ``DataType`` per column.
- ``splitter``: cleaning and simple or stratified train/test splits.
- ``evaluator``: accuracy and calibration metrics.
"""

from .evaluator import evaluate, expected_calibration_error
from .splitter import SplitResult, clean, split
from .type_infer import DataType, infer_column_type, infer_types, problem_type

__all__ = [
    "DataType",
    "SplitResult",
    "clean",
    "evaluate",
    "expected_calibration_error",
    "infer_column_type",
    "infer_types",
    "problem_type",
    "split",
]

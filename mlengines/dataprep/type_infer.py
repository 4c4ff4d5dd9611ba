"""Best-guess column types for tabular data.

Engines use the inferred types to pick code paths (classification versus
regression, one-hot versus scaling) instead of re-deriving heuristics from
raw pandas dtypes.
"""

from enum import Enum
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
import structlog

logger = structlog.get_logger("dataprep.type_infer")

# Rows inspected when a check needs to parse values.
SAMPLE_SIZE = 200
# Distinct-value ratio above which a string column is treated as an identifier.
IDENTIFIER_RATIO = 0.98
IDENTIFIER_MIN_ROWS = 20
# Average word count above which a string column is treated as free text.
TEXT_MIN_WORDS = 4


class DataType(str, Enum):
    """Column types understood by the engines."""
    INTEGER = "integer"
    FLOAT = "float"
    BINARY = "binary"
    CATEGORICAL = "categorical"
    DATETIME = "datetime"
    TEXT = "text"
    IDENTIFIER = "identifier"
    EMPTY = "empty"


NUMERIC_TYPES = frozenset({DataType.INTEGER, DataType.FLOAT})
CLASS_TYPES = frozenset({DataType.BINARY, DataType.CATEGORICAL})


def _looks_like_datetime(values: pd.Series) -> bool:
    sample = values.head(SAMPLE_SIZE).astype(str)
    # Bare numbers parse as epoch offsets; require date punctuation.
    if not sample.str.contains(r"\d").all() or not sample.str.contains(r"[-/:]").all():
        return False
    parsed = pd.to_datetime(sample, errors="coerce", format="mixed", utc=True)
    return bool(parsed.notna().all())


def _numeric_type(values: pd.Series) -> DataType:
    as_float = values.astype(float)
    if pd.api.types.is_integer_dtype(values) or np.all(np.mod(as_float, 1) == 0):
        return DataType.INTEGER
    return DataType.FLOAT


def infer_column_type(series: pd.Series) -> DataType:
    """Infer the type of a single column."""
    values = series.dropna()
    if values.empty:
        return DataType.EMPTY

    if pd.api.types.is_bool_dtype(values):
        return DataType.BINARY

    n_unique = values.nunique()

    if isinstance(series.dtype, pd.CategoricalDtype):
        return DataType.BINARY if n_unique == 2 else DataType.CATEGORICAL

    if pd.api.types.is_datetime64_any_dtype(values):
        return DataType.DATETIME

    if pd.api.types.is_numeric_dtype(values):
        if n_unique == 2:
            return DataType.BINARY
        return _numeric_type(values)

    strings = values.astype(str)
    if n_unique == 2:
        return DataType.BINARY

    numeric = pd.to_numeric(strings, errors="coerce")
    if numeric.notna().all():
        return _numeric_type(numeric)

    if _looks_like_datetime(strings):
        return DataType.DATETIME

    if strings.str.split().str.len().mean() >= TEXT_MIN_WORDS:
        return DataType.TEXT

    if len(strings) >= IDENTIFIER_MIN_ROWS and n_unique / len(strings) >= IDENTIFIER_RATIO:
        return DataType.IDENTIFIER

    return DataType.CATEGORICAL


def infer_types(df: pd.DataFrame) -> Dict[Any, DataType]:
    """Infer a ``DataType`` for every column of ``df``, keyed by column label."""
    dtypes = {column: infer_column_type(df[column]) for column in df.columns}
    logger.debug("Inferred column types", dtypes={str(k): v.value for k, v in dtypes.items()})
    return dtypes


def problem_type(dtype: DataType) -> Optional[str]:
    """Map a target column type to ``classification`` or ``regression``.

    Returns ``None`` for types no bundled engine can learn to predict.
    """
    if dtype in CLASS_TYPES:
        return "classification"
    if dtype in NUMERIC_TYPES:
        return "regression"
    return None

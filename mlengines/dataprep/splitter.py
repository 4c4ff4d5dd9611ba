"""Cleaning and train/test partitioning."""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

import pandas as pd
import structlog
from sklearn.model_selection import train_test_split

from .type_infer import DataType

logger = structlog.get_logger("dataprep.splitter")

# Below this many rows there is nothing sensible to hold out.
MIN_SPLIT_ROWS = 5

DROPPED_TYPES = frozenset({DataType.IDENTIFIER, DataType.EMPTY})


@dataclass
class SplitResult:
    """Train and test partitions plus how they were produced."""
    train: pd.DataFrame
    test: pd.DataFrame
    stratified: bool = False
    holdout: bool = True
    analysis: Dict[str, int] = field(default_factory=dict)


def clean(
    df: pd.DataFrame,
    target: str,
    dtypes: Dict[Any, DataType],
) -> Tuple[pd.DataFrame, List[Any]]:
    """Drop unusable rows and columns.

    Rows without a target value are removed, as are identifier-like and
    all-empty feature columns. Returns the cleaned copy and the dropped
    column names.
    """
    dropped = [
        column for column, dtype in dtypes.items()
        if column != target and dtype in DROPPED_TYPES
    ]
    cleaned = df.drop(columns=dropped).dropna(subset=[target]).reset_index(drop=True)

    if dropped or len(cleaned) != len(df):
        logger.info(
            "Cleaned dataset",
            dropped_columns=dropped,
            dropped_rows=len(df) - len(cleaned),
        )
    return cleaned, dropped


def _can_stratify(labels: pd.Series, test_size: float) -> bool:
    counts = labels.value_counts()
    n_test = math.ceil(test_size * len(labels))
    n_train = len(labels) - n_test
    return counts.min() >= 2 and n_test >= len(counts) and n_train >= len(counts)


def split(
    df: pd.DataFrame,
    target: str,
    test_size: float = 0.2,
    stratify: bool = False,
    random_state: int = 42,
) -> SplitResult:
    """Split ``df`` into train and test partitions.

    Stratification is applied only when requested and feasible (every class
    has at least two rows and both partitions can hold every class).
    Datasets smaller than ``MIN_SPLIT_ROWS`` are used whole for both
    partitions.
    """
    if len(df) < MIN_SPLIT_ROWS:
        logger.warning("Dataset too small to hold out a test split", rows=len(df))
        return SplitResult(
            train=df,
            test=df,
            holdout=False,
            analysis={"rows": len(df), "train_rows": len(df), "test_rows": len(df)},
        )

    stratified = stratify and _can_stratify(df[target], test_size)
    if stratify and not stratified:
        logger.info("Falling back to a simple split", reason="classes too small to stratify")

    train, test = train_test_split(
        df,
        test_size=test_size,
        random_state=random_state,
        stratify=df[target] if stratified else None,
    )
    return SplitResult(
        train=train,
        test=test,
        stratified=stratified,
        analysis={"rows": len(df), "train_rows": len(train), "test_rows": len(test)},
    )

"""Accuracy and calibration metrics for predictions against ground truth."""

from typing import Dict, Optional, Sequence

import numpy as np
from sklearn.metrics import (
    accuracy_score,
    balanced_accuracy_score,
    f1_score,
    mean_absolute_error,
    mean_squared_error,
    r2_score,
)
import structlog

logger = structlog.get_logger("dataprep.evaluator")


def expected_calibration_error(
    correct: Sequence[bool],
    confidence: Sequence[float],
    n_bins: int = 10,
) -> float:
    """Expected calibration error over equal-width confidence bins.

    The gap between mean confidence and accuracy in each bin, weighted by
    the share of rows that fall in it.
    """
    correct_arr = np.asarray(correct, dtype=float)
    confidence_arr = np.clip(np.asarray(confidence, dtype=float), 0.0, 1.0)
    if len(correct_arr) == 0:
        return 0.0

    # Right-closed bins; confidence 0 joins the first bin.
    bins = np.clip(np.ceil(confidence_arr * n_bins).astype(int) - 1, 0, n_bins - 1)
    error = 0.0
    for b in range(n_bins):
        mask = bins == b
        if not mask.any():
            continue
        gap = abs(confidence_arr[mask].mean() - correct_arr[mask].mean())
        error += gap * mask.sum() / len(correct_arr)
    return float(error)


def evaluate(
    y_true: Sequence,
    y_pred: Sequence,
    problem_type: str,
    confidence: Optional[Sequence[float]] = None,
) -> Dict[str, float]:
    """Score predictions.

    Regression reports ``r2``, ``mae`` and ``rmse``; classification reports
    ``accuracy``, ``balanced_accuracy`` and ``f1_macro``, plus
    ``calibration_error`` when per-row confidences are given.
    """
    y_true_arr = np.asarray(y_true)
    y_pred_arr = np.asarray(y_pred)
    if len(y_true_arr) == 0:
        return {}

    metrics: Dict[str, float] = {}
    if problem_type == "regression":
        y_true_f = y_true_arr.astype(float)
        y_pred_f = y_pred_arr.astype(float)
        metrics["mae"] = float(mean_absolute_error(y_true_f, y_pred_f))
        metrics["rmse"] = float(np.sqrt(mean_squared_error(y_true_f, y_pred_f)))
        if len(y_true_f) >= 2:
            metrics["r2"] = float(r2_score(y_true_f, y_pred_f))
    elif problem_type == "classification":
        metrics["accuracy"] = float(accuracy_score(y_true_arr, y_pred_arr))
        metrics["balanced_accuracy"] = float(balanced_accuracy_score(y_true_arr, y_pred_arr))
        metrics["f1_macro"] = float(f1_score(y_true_arr, y_pred_arr, average="macro", zero_division=0))
        if confidence is not None:
            metrics["calibration_error"] = expected_calibration_error(
                y_true_arr == y_pred_arr, confidence
            )
    else:
        raise ValueError(f"Unknown problem type: {problem_type}")

    logger.debug("Evaluated predictions", problem_type=problem_type, **metrics)
    return metrics

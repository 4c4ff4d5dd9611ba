"""Local scikit-learn engine.

Trains a preprocessing + estimator ``Pipeline`` on the rows passed to
``create`` and persists it with joblib in the model's storage.

Flow
- Column types come from ``dataprep.infer_types``; the target type decides
  between classification and regression
- Every feature gets its own preprocessing branch (scaling, one-hot,
  date parts, TF-IDF) so importances can be mapped back to input columns
- The data is split with ``dataprep.split`` and the held-out part is scored
  with ``dataprep.evaluate``
- ``update`` grows tree ensembles with ``warm_start`` or calls
  ``partial_fit`` on SGD models; preprocessing stays frozen
"""

import json
from typing import Any, Dict, List, Literal, Optional, Tuple, Type

import numpy as np
import pandas as pd
from pydantic import Field
from sklearn.compose import ColumnTransformer
from sklearn.ensemble import (
    GradientBoostingClassifier,
    GradientBoostingRegressor,
    RandomForestClassifier,
    RandomForestRegressor,
)
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.impute import SimpleImputer
from sklearn.linear_model import LogisticRegression, Ridge, SGDClassifier, SGDRegressor
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import FunctionTransformer, OneHotEncoder, StandardScaler

from mlengines.dataprep import DataType, clean, evaluate, infer_types, problem_type, split
from mlengines.dataprep.type_infer import NUMERIC_TYPES

from .base import (
    BaseMLEngine,
    Capability,
    EngineArgs,
    EngineError,
    EngineInferenceError,
    EngineNotSupportedError,
    EngineTrainingError,
    EngineValidationError,
    explain_column,
)

PIPELINE_FILE = "pipeline.joblib"
METADATA_FILE = "metadata.json"
MISSING_CATEGORY = "__missing__"
TEXT_MAX_FEATURES = 200
# Width of the regression interval in per-tree standard deviations (~95%).
INTERVAL_Z = 1.96

ModelType = Literal["auto", "random_forest", "gradient_boosting", "linear", "sgd"]


class SklearnArgs(EngineArgs):
    """Arguments accepted by ``create`` and ``update``."""
    model_type: ModelType = "auto"
    n_estimators: int = Field(default=100, ge=1)
    max_depth: Optional[int] = Field(default=None, ge=1)
    learning_rate: float = Field(default=0.1, gt=0)
    alpha: Optional[float] = Field(default=None, gt=0)
    random_state: int = 42
    test_size: float = Field(default=0.2, gt=0, lt=1)
    stratify: bool = True
    explain: bool = True
    update_estimators: int = Field(default=20, ge=1)


class SklearnPredictArgs(EngineArgs):
    """Arguments accepted by ``predict``."""
    explain: Optional[bool] = None


def _as_numeric(X: Any) -> pd.DataFrame:
    return pd.DataFrame(X).apply(pd.to_numeric, errors="coerce")


def _as_category_strings(X: Any) -> pd.DataFrame:
    frame = pd.DataFrame(X).astype(object)
    return frame.where(frame.notna(), MISSING_CATEGORY).astype(str)


def _datetime_parts(X: Any) -> np.ndarray:
    frame = pd.DataFrame(X)
    parts = []
    for column in frame.columns:
        values = pd.to_datetime(frame[column], errors="coerce", format="mixed", utc=True)
        parts.extend([values.dt.year, values.dt.month, values.dt.day, values.dt.dayofweek])
    return np.column_stack([part.astype(float).to_numpy() for part in parts])


def _as_text(X: Any) -> pd.Series:
    series = X.iloc[:, 0] if isinstance(X, pd.DataFrame) else pd.Series(X)
    return series.fillna("").astype(str)


def _native(value: Any) -> Any:
    return value.item() if isinstance(value, np.generic) else value


def _resolve_model_type(model_type: str) -> str:
    return "random_forest" if model_type == "auto" else model_type


def feature_frame(df: pd.DataFrame, features: List[Any]) -> pd.DataFrame:
    """Select ``features`` with string column names, as scikit-learn expects."""
    return df[features].set_axis([str(column) for column in features], axis=1)


def build_preprocessor(
    features: List[Any],
    dtypes: Dict[Any, DataType],
) -> Tuple[ColumnTransformer, Dict[str, Any]]:
    """One transformer branch per feature column.

    Returns the transformer and a map from branch name to input column.
    """
    transformers = []
    branches: Dict[str, Any] = {}
    for i, column in enumerate(features):
        dtype = dtypes[column]
        if dtype in NUMERIC_TYPES:
            kind = "num"
            steps = Pipeline([
                ("coerce", FunctionTransformer(_as_numeric)),
                ("impute", SimpleImputer(strategy="median")),
                ("scale", StandardScaler()),
            ])
        elif dtype == DataType.DATETIME:
            kind = "date"
            steps = Pipeline([
                ("parts", FunctionTransformer(_datetime_parts)),
                ("impute", SimpleImputer(strategy="median")),
            ])
        elif dtype == DataType.TEXT:
            kind = "text"
            steps = Pipeline([
                ("flatten", FunctionTransformer(_as_text)),
                ("tfidf", TfidfVectorizer(max_features=TEXT_MAX_FEATURES)),
            ])
        else:
            kind = "cat"
            steps = Pipeline([
                ("strings", FunctionTransformer(_as_category_strings)),
                ("onehot", OneHotEncoder(handle_unknown="ignore")),
            ])
        name = f"{kind}_{i}"
        transformers.append((name, steps, [str(column)]))
        branches[name] = column
    return ColumnTransformer(transformers, remainder="drop", sparse_threshold=0), branches


def build_estimator(problem: str, params: SklearnArgs) -> Any:
    """Create the estimator for ``problem`` (classification or regression)."""
    model_type = _resolve_model_type(params.model_type)
    classification = problem == "classification"

    if model_type == "random_forest":
        cls = RandomForestClassifier if classification else RandomForestRegressor
        return cls(
            n_estimators=params.n_estimators,
            max_depth=params.max_depth,
            random_state=params.random_state,
        )
    if model_type == "gradient_boosting":
        cls = GradientBoostingClassifier if classification else GradientBoostingRegressor
        return cls(
            n_estimators=params.n_estimators,
            max_depth=params.max_depth or 3,
            learning_rate=params.learning_rate,
            random_state=params.random_state,
        )
    if model_type == "linear":
        if classification:
            return LogisticRegression(C=1.0 / (params.alpha or 1.0), max_iter=1000)
        return Ridge(alpha=params.alpha or 1.0)
    if model_type == "sgd":
        if classification:
            return SGDClassifier(loss="log_loss", alpha=params.alpha or 1e-4, random_state=params.random_state)
        return SGDRegressor(alpha=params.alpha or 1e-4, random_state=params.random_state)
    raise ValueError(f"Unknown model type: {model_type}")


class SklearnEngine(BaseMLEngine):
    """Classification and regression on tabular data with scikit-learn."""

    name = "sklearn"
    capabilities = frozenset({
        Capability.CREATE,
        Capability.PREDICT,
        Capability.UPDATE,
        Capability.DESCRIBE,
    })
    args_model = SklearnArgs

    def create(
        self,
        target: str,
        df: Optional[pd.DataFrame] = None,
        args: Optional[Dict[str, Any]] = None,
    ) -> None:
        storage = self.require_model_storage()
        if df is None:
            raise EngineValidationError(
                "The sklearn engine trains locally and needs training data",
                engine=self.name,
                model_id=self.model_id,
            )
        self.validate_target(target, df)
        params = self.parse_args(args)
        if params.extra_args():
            self.logger.info("Keeping unrecognized arguments", keys=sorted(params.extra_args()))

        dtypes = infer_types(df)
        problem = problem_type(dtypes[target])
        if problem is None:
            raise EngineValidationError(
                f"Cannot learn to predict '{target}' of type '{dtypes[target].value}'",
                engine=self.name,
                model_id=self.model_id,
            )

        data, dropped = clean(df, target, dtypes)
        features = [column for column in data.columns if column != target]
        if not features:
            raise EngineValidationError("No usable feature columns", engine=self.name, model_id=self.model_id)
        if data.empty:
            raise EngineValidationError(
                f"No rows with a value for '{target}'", engine=self.name, model_id=self.model_id
            )

        data = data.copy()
        data[target] = self._prepare_target(data[target], problem)
        if problem == "classification" and data[target].nunique() < 2:
            raise EngineValidationError(
                f"Classification needs at least two classes in '{target}'",
                engine=self.name,
                model_id=self.model_id,
            )

        parts = split(
            data,
            target,
            test_size=params.test_size,
            stratify=params.stratify and problem == "classification",
            random_state=params.random_state,
        )
        model_type = _resolve_model_type(params.model_type)
        preprocessor, branches = build_preprocessor(features, dtypes)
        pipeline = Pipeline([
            ("preprocess", preprocessor),
            ("model", build_estimator(problem, params)),
        ])

        self.logger.info(
            "Training model",
            target=target,
            problem_type=problem,
            model_type=model_type,
            features=len(features),
            train_rows=len(parts.train),
            dropped_columns=dropped,
        )

        target_std = float(np.std(parts.train[target])) if problem == "regression" else None
        metadata: Dict[str, Any] = {
            "target": target,
            "problem_type": problem,
            "model_type": model_type,
            "features": features,
            "dtypes": {str(column): dtypes[column].value for column in features + [target]},
            "dropped_columns": dropped,
            "branches": branches,
            "target_std": target_std or 1.0,
            "args": params.model_dump(mode="json"),
            "split": parts.analysis,
            "stratified": parts.stratified,
            "rows_trained": len(parts.train),
            "update_count": 0,
        }

        try:
            pipeline.fit(feature_frame(parts.train, features), parts.train[target])
            metadata["metrics"] = self._score(pipeline, parts.test, metadata)
        except Exception as e:
            raise EngineTrainingError(
                f"Training failed: {e}", engine=self.name, model_id=self.model_id
            ) from e

        if problem == "classification":
            metadata["classes"] = [_native(c) for c in pipeline.classes_]

        storage.joblib_set(PIPELINE_FILE, pipeline)
        storage.json_set(METADATA_FILE, metadata)
        self.logger.info("Model trained", **metadata["metrics"])

    def predict(self, df: pd.DataFrame, args: Optional[Dict[str, Any]] = None) -> pd.DataFrame:
        pipeline, metadata = self._load(EngineInferenceError)
        params = self.validate_args(SklearnPredictArgs, args)
        explain = metadata["args"].get("explain", True) if params.explain is None else params.explain

        features = metadata["features"]
        missing = [column for column in features if column not in df.columns]
        if missing:
            raise EngineInferenceError(
                f"Missing feature columns: {missing}", engine=self.name, model_id=self.model_id
            )

        target = metadata["target"]
        X = feature_frame(df, features)
        try:
            predictions = pipeline.predict(X)
            out = pd.DataFrame({target: predictions}, index=df.index)
            if explain:
                out[explain_column(target)] = self._explanations(pipeline, X, predictions, metadata)
        except Exception as e:
            raise EngineInferenceError(
                f"Prediction failed: {e}", engine=self.name, model_id=self.model_id
            ) from e

        self.logger.debug("Predicted", rows=len(out))
        return out

    def update(self, df: Optional[pd.DataFrame] = None, args: Optional[Dict[str, Any]] = None) -> None:
        storage = self.require_model_storage()
        pipeline, metadata = self._load(EngineTrainingError)
        target = metadata["target"]
        model_type = metadata["model_type"]

        if model_type == "linear":
            raise EngineNotSupportedError(
                "Linear models cannot be updated incrementally; create a new model instead",
                engine=self.name,
                model_id=self.model_id,
            )
        if df is None or df.empty:
            raise EngineValidationError("Updating needs new training rows", engine=self.name, model_id=self.model_id)
        self.validate_target(target, df)
        features = metadata["features"]
        missing = [column for column in features if column not in df.columns]
        if missing:
            raise EngineValidationError(
                f"Missing feature columns: {missing}", engine=self.name, model_id=self.model_id
            )

        params = self.parse_args({**metadata["args"], **(args or {})})
        problem = metadata["problem_type"]
        data = df.dropna(subset=[target]).copy()
        data[target] = self._prepare_target(data[target], problem)
        if data.empty:
            raise EngineValidationError(
                f"No rows with a value for '{target}'", engine=self.name, model_id=self.model_id
            )
        if problem == "classification":
            self._check_update_classes(set(data[target].unique()), metadata)

        preprocess = pipeline.named_steps["preprocess"]
        estimator = pipeline.named_steps["model"]
        try:
            Xt = preprocess.transform(feature_frame(data, features))
            if model_type == "sgd":
                estimator.partial_fit(Xt, data[target])
            else:
                estimator.set_params(
                    warm_start=True,
                    n_estimators=estimator.n_estimators + params.update_estimators,
                )
                estimator.fit(Xt, data[target])
            metadata["metrics"] = self._score(pipeline, data, metadata)
        except EngineError:
            raise
        except Exception as e:
            raise EngineTrainingError(
                f"Update failed: {e}", engine=self.name, model_id=self.model_id
            ) from e

        if hasattr(estimator, "n_estimators"):
            metadata["args"]["n_estimators"] = estimator.n_estimators
        metadata["rows_trained"] += len(data)
        metadata["update_count"] += 1

        storage.joblib_set(PIPELINE_FILE, pipeline)
        storage.json_set(METADATA_FILE, metadata)
        self.logger.info("Model updated", rows=len(data), update_count=metadata["update_count"])

    def describe(self, key: Optional[str] = None) -> pd.DataFrame:
        pipeline, metadata = self._load(EngineInferenceError)

        if key == "features":
            return pd.DataFrame([
                {"column": column, "dtype": metadata["dtypes"][str(column)]}
                for column in metadata["features"]
            ])
        if key == "importance":
            return self._feature_importance(pipeline, metadata)
        if key == "args":
            return pd.DataFrame(
                [{"key": k, "value": v} for k, v in sorted(metadata["args"].items())],
                columns=["key", "value"],
            )
        if key == "metrics":
            return pd.DataFrame(
                [{"metric": k, "value": v} for k, v in sorted(metadata.get("metrics", {}).items())],
                columns=["metric", "value"],
            )

        summary = {
            "target": metadata["target"],
            "problem_type": metadata["problem_type"],
            "model_type": metadata["model_type"],
            "n_features": len(metadata["features"]),
            "rows_trained": metadata["rows_trained"],
            "update_count": metadata["update_count"],
        }
        summary.update(metadata.get("metrics", {}))
        return pd.DataFrame([summary])

    def _load(self, error_class: Type[EngineError]) -> Tuple[Pipeline, Dict[str, Any]]:
        storage = self.require_model_storage()
        metadata = storage.json_get(METADATA_FILE)
        if metadata is None or not storage.exists(PIPELINE_FILE):
            raise error_class(
                "Model artifacts not found; was the model created?",
                engine=self.name,
                model_id=self.model_id,
            )
        return storage.joblib_get(PIPELINE_FILE), metadata

    @staticmethod
    def _prepare_target(values: pd.Series, problem: str) -> pd.Series:
        if problem == "regression":
            return pd.to_numeric(values, errors="raise").astype(float)
        if isinstance(values.dtype, pd.CategoricalDtype):
            return values.astype(values.cat.categories.dtype)
        return values

    def _check_update_classes(self, classes: set, metadata: Dict[str, Any]) -> None:
        known = set(metadata.get("classes", []))
        unseen = classes - known
        if unseen:
            raise EngineValidationError(
                f"Update data contains classes the model was not trained on: {sorted(map(str, unseen))}",
                engine=self.name,
                model_id=self.model_id,
            )
        # New trees in a warm-started ensemble must see the same label set.
        if metadata["model_type"] != "sgd" and classes != known:
            raise EngineValidationError(
                f"Update data must contain every class: {sorted(map(str, known))}",
                engine=self.name,
                model_id=self.model_id,
            )

    def _confidence(
        self,
        pipeline: Pipeline,
        X: pd.DataFrame,
        predictions: np.ndarray,
        metadata: Dict[str, Any],
    ) -> Tuple[Optional[np.ndarray], Optional[np.ndarray], Optional[np.ndarray]]:
        """Per-row confidence and, for forest regressors, interval bounds."""
        if metadata["problem_type"] == "classification":
            if hasattr(pipeline, "predict_proba"):
                return pipeline.predict_proba(X).max(axis=1), None, None
            return None, None, None

        estimator = pipeline.named_steps["model"]
        if not isinstance(estimator, RandomForestRegressor):
            return None, None, None

        Xt = pipeline.named_steps["preprocess"].transform(X)
        per_tree = np.stack([tree.predict(Xt) for tree in estimator.estimators_])
        spread = per_tree.std(axis=0)
        confidence = 1.0 / (1.0 + spread / metadata["target_std"])
        predicted = np.asarray(predictions, dtype=float)
        return confidence, predicted - INTERVAL_Z * spread, predicted + INTERVAL_Z * spread

    def _explanations(
        self,
        pipeline: Pipeline,
        X: pd.DataFrame,
        predictions: np.ndarray,
        metadata: Dict[str, Any],
    ) -> List[str]:
        confidence, lower, upper = self._confidence(pipeline, X, predictions, metadata)
        rows = []
        for i, value in enumerate(predictions):
            row: Dict[str, Any] = {"predicted_value": _native(value)}
            if confidence is not None:
                row["confidence"] = round(float(confidence[i]), 4)
            if lower is not None and upper is not None:
                row["confidence_lower_bound"] = float(lower[i])
                row["confidence_upper_bound"] = float(upper[i])
            rows.append(json.dumps(row, default=str))
        return rows

    def _score(self, pipeline: Pipeline, data: pd.DataFrame, metadata: Dict[str, Any]) -> Dict[str, float]:
        X = feature_frame(data, metadata["features"])
        predictions = pipeline.predict(X)
        confidence = None
        if metadata["problem_type"] == "classification":
            confidence, _, _ = self._confidence(pipeline, X, predictions, metadata)
        return evaluate(data[metadata["target"]], predictions, metadata["problem_type"], confidence=confidence)

    def _feature_importance(self, pipeline: Pipeline, metadata: Dict[str, Any]) -> pd.DataFrame:
        estimator = pipeline.named_steps["model"]
        preprocess = pipeline.named_steps["preprocess"]

        if hasattr(estimator, "feature_importances_"):
            weights = np.asarray(estimator.feature_importances_, dtype=float)
        elif hasattr(estimator, "coef_"):
            weights = np.abs(np.atleast_2d(estimator.coef_)).mean(axis=0)
        else:
            return pd.DataFrame(columns=["feature", "importance"])

        rows = []
        for branch, column in metadata["branches"].items():
            indices = preprocess.output_indices_.get(branch)
            if indices is None:
                continue
            rows.append({"feature": column, "importance": float(weights[indices].sum())})

        table = pd.DataFrame(rows, columns=["feature", "importance"])
        total = table["importance"].sum()
        if total > 0:
            table["importance"] = table["importance"] / total
        return table.sort_values("importance", ascending=False).reset_index(drop=True)

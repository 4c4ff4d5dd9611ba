"""Tests for the scikit-learn engine."""

import json

import numpy as np
import pandas as pd
import pytest

from mlengines.engines.base import (
    EngineInferenceError,
    EngineNotSupportedError,
    EngineValidationError,
    explain_column,
)
from mlengines.engines.sklearn_engine import METADATA_FILE, PIPELINE_FILE, SklearnEngine
from mlengines.storage import EngineStorage, ModelStorage


@pytest.fixture
def make_engine(tmp_path):
    def _make(model_id: str = "m1") -> SklearnEngine:
        return SklearnEngine(
            model_storage=ModelStorage(tmp_path / "models" / model_id, model_id),
            engine_storage=EngineStorage(tmp_path / "engines" / "sklearn", "sklearn"),
        )
    return _make


class TestCreateAndPredict:
    """Training and scoring on tabular data."""

    def test_regression(self, make_engine, regression_df):
        engine = make_engine()
        engine.create("price", regression_df)

        query = regression_df.drop(columns=["price"]).iloc[:10]
        result = engine.predict(query)

        assert len(result) == 10
        assert list(result.index) == list(query.index)
        assert "price" in result.columns
        assert np.abs(result["price"] - regression_df["price"].iloc[:10]).mean() < 5

    def test_regression_explanations(self, make_engine, regression_df):
        engine = make_engine()
        engine.create("price", regression_df)

        result = engine.predict(regression_df.drop(columns=["price"]).iloc[:3])
        explanation = json.loads(result[explain_column("price")].iloc[0])

        assert explanation["predicted_value"] == pytest.approx(result["price"].iloc[0])
        assert 0 < explanation["confidence"] <= 1
        assert explanation["confidence_lower_bound"] <= explanation["predicted_value"]
        assert explanation["confidence_upper_bound"] >= explanation["predicted_value"]

    def test_classification(self, make_engine, classification_df):
        engine = make_engine()
        engine.create("label", classification_df)

        result = engine.predict(classification_df.drop(columns=["label"]))
        assert set(result["label"]) <= {"low", "high"}
        assert (result["label"] == classification_df["label"]).mean() > 0.9

        confidence = json.loads(result[explain_column("label")].iloc[0])["confidence"]
        assert 0.5 <= confidence <= 1.0

    def test_explain_can_be_disabled(self, make_engine, regression_df):
        engine = make_engine()
        engine.create("price", regression_df, {"explain": False})
        result = engine.predict(regression_df.drop(columns=["price"]))
        assert list(result.columns) == ["price"]

        result = engine.predict(regression_df.drop(columns=["price"]), {"explain": True})
        assert explain_column("price") in result.columns

    @pytest.mark.parametrize("model_type", ["gradient_boosting", "linear", "sgd"])
    def test_other_model_types(self, make_engine, regression_df, model_type):
        engine = make_engine()
        engine.create("price", regression_df, {"model_type": model_type, "n_estimators": 20})
        result = engine.predict(regression_df.drop(columns=["price"]))
        assert len(result) == len(regression_df)

    def test_datetime_and_text_features(self, make_engine):
        rng = np.random.default_rng(3)
        n = 40
        df = pd.DataFrame({
            "listed": pd.date_range("2024-01-01", periods=n, freq="D").strftime("%Y-%m-%d"),
            "notes": [f"cozy flat near the park number {i % 5}" for i in range(n)],
            "rooms": rng.integers(1, 5, n),
            "rent": rng.uniform(500, 2000, n),
        })
        engine = make_engine()
        engine.create("rent", df)

        result = engine.predict(df.drop(columns=["rent"]).head(5))
        assert len(result) == 5

    def test_predict_does_not_modify_artifacts(self, make_engine, regression_df):
        engine = make_engine()
        engine.create("price", regression_df)
        before = {name: engine.model_storage.file_get(name) for name in (PIPELINE_FILE, METADATA_FILE)}

        engine.predict(regression_df.drop(columns=["price"]))

        after = {name: engine.model_storage.file_get(name) for name in (PIPELINE_FILE, METADATA_FILE)}
        assert before == after

    def test_non_string_column_labels(self, make_engine, regression_df):
        df = regression_df.rename(columns={"feature1": 5, "feature2": 1})
        engine = make_engine()
        engine.create("price", df)

        result = engine.predict(df.drop(columns=["price"]).head(4))
        assert list(result.columns) == ["price", explain_column("price")]
        assert len(result) == 4

        features = engine.describe("features").set_index("column")["dtype"]
        assert features.to_dict() == {5: "float", 1: "categorical"}
        assert set(engine.describe("importance")["feature"]) == {5, 1}


class TestValidation:
    """Errors surface as the engine error taxonomy."""

    def test_missing_target(self, make_engine, regression_df):
        with pytest.raises(EngineValidationError, match="cost"):
            make_engine().create("cost", regression_df)

    def test_requires_data(self, make_engine):
        with pytest.raises(EngineValidationError):
            make_engine().create("price", None)

    def test_unlearnable_target(self, make_engine):
        df = pd.DataFrame({
            "x": range(6),
            "review": ["this is a long review text"] * 6,
        })
        with pytest.raises(EngineValidationError, match="review"):
            make_engine().create("review", df)

    def test_invalid_args(self, make_engine, regression_df):
        with pytest.raises(EngineValidationError):
            make_engine().create("price", regression_df, {"n_estimators": 0})

    def test_missing_feature_columns(self, make_engine, regression_df):
        engine = make_engine()
        engine.create("price", regression_df)
        with pytest.raises(EngineInferenceError, match="feature2"):
            engine.predict(regression_df[["feature1"]])

    def test_predict_before_create(self, make_engine, regression_df):
        with pytest.raises(EngineInferenceError):
            make_engine().predict(regression_df)

    def test_unknown_args_are_kept(self, make_engine, regression_df):
        engine = make_engine()
        engine.create("price", regression_df, {"owner": "pricing-team"})
        args = engine.describe("args")
        assert "owner" in set(args["key"])


class TestUpdate:
    """Incremental training."""

    def test_forest_grows(self, make_engine, regression_df):
        engine = make_engine()
        engine.create("price", regression_df.iloc[:60], {"n_estimators": 30})
        engine.update(regression_df.iloc[60:])

        args = engine.describe("args").set_index("key")["value"]
        assert args["n_estimators"] == 50
        summary = engine.describe()
        assert summary["update_count"].iloc[0] == 1
        assert summary["rows_trained"].iloc[0] > 48

        result = engine.predict(regression_df.drop(columns=["price"]).iloc[:5])
        assert len(result) == 5

    def test_sgd_partial_fit_with_subset_of_classes(self, make_engine, classification_df):
        engine = make_engine()
        engine.create("label", classification_df, {"model_type": "sgd"})
        engine.update(classification_df[classification_df["label"] == "high"].head(5))
        assert engine.describe()["update_count"].iloc[0] == 1

    def test_forest_needs_every_class(self, make_engine, classification_df):
        engine = make_engine()
        engine.create("label", classification_df, {"n_estimators": 10})
        with pytest.raises(EngineValidationError, match="every class"):
            engine.update(classification_df[classification_df["label"] == "high"])

    def test_rejects_unseen_classes(self, make_engine, classification_df):
        engine = make_engine()
        engine.create("label", classification_df, {"model_type": "sgd"})
        new_rows = classification_df.head(4).assign(label="medium")
        with pytest.raises(EngineValidationError, match="medium"):
            engine.update(new_rows)

    def test_linear_models_cannot_update(self, make_engine, regression_df):
        engine = make_engine()
        engine.create("price", regression_df, {"model_type": "linear"})
        with pytest.raises(EngineNotSupportedError):
            engine.update(regression_df)

    def test_update_needs_rows(self, make_engine, regression_df):
        engine = make_engine()
        engine.create("price", regression_df)
        with pytest.raises(EngineValidationError):
            engine.update(None)


class TestDescribe:
    """Model introspection."""

    def test_feature_importance(self, make_engine, regression_df):
        engine = make_engine()
        engine.create("price", regression_df)

        importance = engine.describe("importance")
        assert set(importance["feature"]) == {"feature1", "feature2"}
        assert importance["importance"].sum() == pytest.approx(1.0)
        assert importance["feature"].iloc[0] == "feature1"

    def test_features(self, make_engine, regression_df):
        engine = make_engine()
        engine.create("price", regression_df)
        features = engine.describe("features").set_index("column")["dtype"]
        assert features.to_dict() == {"feature1": "float", "feature2": "categorical"}

    def test_summary(self, make_engine, regression_df):
        engine = make_engine()
        engine.create("price", regression_df)
        summary = engine.describe()
        assert len(summary) == 1
        assert summary["target"].iloc[0] == "price"
        assert summary["problem_type"].iloc[0] == "regression"
        assert "mae" in summary.columns

"""
test_detections.py - Tests for detection table validation and sample splitting
"""

import numpy as np
import pytest

from libsize import LibsizeConfig
from libsize.data.config import ColumnNotFoundError, EmptyInputError, ValidationError
from libsize.data.detections import DetectionValidator, split_by_sample, validate_detections


class TestValidation:
    def test_valid_table_passes(self, make_detections):
        df = make_detections([0, 1, 2], [0, 1, 2])
        out = validate_detections(df)
        assert len(out) == 3
        assert out["x"].dtype == float

    def test_returns_copy(self, make_detections):
        df = make_detections([0, 1], [0, 1])
        out = validate_detections(df)
        out.loc[0, "x"] = 99.0
        assert df.loc[0, "x"] == 0.0

    def test_sample_ids_become_strings(self, make_detections):
        df = make_detections([0, 1], [0, 1], sample_id=7)
        assert validate_detections(df)["sample_id"].tolist() == ["7", "7"]

    def test_missing_column(self, make_detections):
        df = make_detections([0, 1], [0, 1]).drop(columns="cell")
        with pytest.raises(ColumnNotFoundError) as excinfo:
            validate_detections(df)
        assert excinfo.value.column == "cell"

    def test_covariate_column_required(self, make_detections):
        df = make_detections([0, 1], [0, 1])
        config = LibsizeConfig(formula_covariates=["region", "fov"])
        with pytest.raises(ColumnNotFoundError):
            validate_detections(df, config)

    def test_required_columns_follow_config(self):
        config = LibsizeConfig(x_col="x_global_px", region_col="zone", formula_covariates=["zone"])
        cols = DetectionValidator(config).required_columns()
        assert "x_global_px" in cols
        assert "zone" in cols
        assert "region" not in cols

    def test_negative_counts(self, make_detections):
        df = make_detections([0, 1], [0, 1], counts=[1, -2])
        with pytest.raises(ValidationError):
            validate_detections(df)

    def test_missing_counts(self, make_detections):
        df = make_detections([0, 1], [0, 1], counts=[1, None])
        with pytest.raises(ValidationError):
            validate_detections(df)

    def test_non_finite_coordinates(self, make_detections):
        df = make_detections([0, np.inf], [0, 1])
        with pytest.raises(ValidationError):
            validate_detections(df)

    def test_empty(self, make_detections):
        df = make_detections([], [])
        with pytest.raises(EmptyInputError):
            validate_detections(df)


class TestSplit:
    def test_sorted_samples(self, detections):
        shuffled = detections.sample(frac=1.0, random_state=1)
        parts = split_by_sample(shuffled)
        assert list(parts) == ["S1", "S2"]
        assert sum(len(p) for p in parts.values()) == len(detections)

    def test_each_part_has_one_sample(self, detections):
        for sid, part in split_by_sample(detections).items():
            assert (part["sample_id"] == sid).all()

    def test_missing_sample_column(self, detections):
        with pytest.raises(ColumnNotFoundError):
            split_by_sample(detections.drop(columns="sample_id"))

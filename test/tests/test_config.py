"""Tests for configuration classes."""

import pytest

from multiomics_ml.core.config import (
    AlignmentConfig,
    Config,
    CrossValidationConfig,
    DistanceMetric,
    ModelConfig,
    PipelineConfig,
    SelectionConfig,
)


class TestModelConfig:
    """Test keep budgets and validation."""

    def test_defaults_keep_all(self):
        cfg = ModelConfig()
        assert cfg.n_components == 2
        assert cfg.keep_for("mrna", 30) == 30

    def test_count_is_capped(self):
        cfg = ModelConfig(keep=100)
        assert cfg.keep_for("mrna", 30) == 30

    def test_fraction(self):
        cfg = ModelConfig(keep=0.5)
        assert cfg.keep_for("mrna", 30) == 15
        # rounding never drops below one feature
        assert cfg.keep_for("tiny", 1) == 1
        assert ModelConfig(keep=0.01).keep_for("mrna", 30) == 1

    def test_per_block_mapping(self):
        cfg = ModelConfig(keep={"mrna": 5, "mirna": 0.2})
        assert cfg.keep_for("mrna", 30) == 5
        assert cfg.keep_for("mirna", 30) == 6
        assert cfg.keep_for("methylation", 30) == 30

    def test_invalid_fraction(self):
        with pytest.raises(ValueError, match="Fractional keep"):
            ModelConfig(keep=1.5).keep_for("mrna", 30)

    def test_invalid_values(self):
        with pytest.raises(ValueError):
            ModelConfig(n_components=0)
        with pytest.raises(ValueError):
            ModelConfig(design=2.0)
        with pytest.raises(ValueError):
            ModelConfig(max_iter=0)


class TestCrossValidationConfig:
    def test_string_distances_are_coerced(self):
        cfg = CrossValidationConfig(distances="max_dist")
        assert cfg.distances == (DistanceMetric.MAX_DIST,)

        cfg = CrossValidationConfig(distances=["centroids_dist", "mahalanobis_dist"])
        assert cfg.distances == (
            DistanceMetric.CENTROIDS_DIST,
            DistanceMetric.MAHALANOBIS_DIST,
        )

    def test_invalid_distance(self):
        with pytest.raises(ValueError):
            CrossValidationConfig(distances=["manhattan"])

    def test_invalid_folds(self):
        with pytest.raises(ValueError):
            CrossValidationConfig(n_folds=1)


class TestAlignmentAndSelection:
    def test_prefix_length_accepts_level_names(self):
        assert AlignmentConfig(prefix_length="sample").prefix_length == 15
        assert AlignmentConfig().prefix_length == 12

    def test_selection_budget_per_block(self):
        cfg = SelectionConfig(n_features={"mrna": 10})
        assert cfg.for_block("mrna") == 10
        assert cfg.for_block("mirna") is None
        assert SelectionConfig(n_features=50).for_block("mirna") == 50

    def test_selection_rejects_non_positive(self):
        with pytest.raises(ValueError):
            SelectionConfig(n_features=0)


class TestPipelineConfig:
    def test_from_dict(self):
        cfg = PipelineConfig.from_dict(
            {"model": {"n_components": 3}, "selection": {"n_features": 100}}
        )
        assert cfg.model.n_components == 3
        assert cfg.selection.n_features == 100
        assert cfg.cross_validation.n_folds == 5

    def test_unknown_section(self):
        with pytest.raises(ValueError, match="Unknown configuration"):
            PipelineConfig.from_dict({"plotting": {}})

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "alignment:\n"
            "  prefix_length: sample\n"
            "  missing_labels: [NA, unknown]\n"
            "selection:\n"
            "  n_features:\n"
            "    mrna: 10\n"
            "model:\n"
            "  n_components: 3\n"
            "  keep: 0.2\n"
            "cross_validation:\n"
            "  n_folds: 4\n"
            "  distances: [max_dist, centroids_dist]\n"
        )
        cfg = PipelineConfig.from_yaml(path)

        assert cfg.alignment.prefix_length == 15
        assert cfg.alignment.missing_labels == ("NA", "unknown")
        assert cfg.selection.for_block("mrna") == 10
        assert cfg.model.keep == 0.2
        assert cfg.cross_validation.distances == (
            DistanceMetric.MAX_DIST,
            DistanceMetric.CENTROIDS_DIST,
        )

    def test_yaml_to_dict(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("model:\n  n_components: 2\n")
        data = Config(path).to_dict()
        assert data == {"model": {"n_components": 2}}

    def test_yaml_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- model\n- selection\n")
        with pytest.raises(ValueError):
            PipelineConfig.from_yaml(path)

    def test_missing_yaml(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config(tmp_path / "absent.yaml")

    def test_empty_yaml_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        cfg = PipelineConfig.from_yaml(path)
        assert cfg.model == ModelConfig()

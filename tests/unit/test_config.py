"""Unit tests for pipeline configuration."""

import pytest

from structconn.core.config import PipelineConfig, load_config, load_yaml_config
from structconn.core.exceptions import ConfigurationError, MissingInputError


class TestPipelineConfig:
    """Tests for PipelineConfig defaults and validation."""

    def test_defaults(self):
        config = PipelineConfig()
        config.validate()

        assert config.mask_fa_threshold == 0.25
        assert config.wm_dilation_radius == 2
        assert config.min_cluster_voxels_fa == 10000
        assert config.min_cluster_voxels_final == 20000
        assert config.min_length == 10.0
        assert config.count_longest_path is False
        assert config.exclusion_threshold == 0.5
        assert config.scalars == ("FA", "MD", "AD", "RD")

    def test_cortical_preset(self):
        """The cortical preset changes seeding and curvature but not the mask FA threshold."""
        config = PipelineConfig.cortical()
        assert config.seed_fa_threshold == 0.2
        assert config.curvature_threshold == 80.0
        assert config.compute_scalars is True
        assert config.mask_fa_threshold == 0.25

    def test_cortical_preset_overrides(self):
        assert PipelineConfig.cortical(curvature_threshold=60.0).curvature_threshold == 60.0

    def test_scalars_string_normalised(self):
        assert PipelineConfig(scalars="FA").scalars == ("FA",)

    def test_frozen(self):
        config = PipelineConfig()
        with pytest.raises(AttributeError):
            config.min_length = 5.0

    def test_with_overrides(self):
        config = PipelineConfig().with_overrides(min_length=20.0)
        assert config.min_length == 20.0

    def test_to_dict_is_plain(self):
        values = PipelineConfig().to_dict()
        assert values["scalars"] == ["FA", "MD", "AD", "RD"]
        assert PipelineConfig.from_dict(values) == PipelineConfig()

    def test_unknown_keys(self):
        with pytest.raises(ConfigurationError, match="min_lenght"):
            PipelineConfig.from_dict({"min_lenght": 5})

    @pytest.mark.parametrize(
        "overrides",
        [
            {"min_length": 0},
            {"mask_fa_threshold": 1.5},
            {"wm_dilation_radius": 0},
            {"min_cluster_voxels_final": 2.5},
            {"curvature_threshold": 200.0},
            {"scalars": ("FA", "GFA")},
            {"edge_aggregation": "max"},
            {"target_space": "mni"},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ConfigurationError):
            PipelineConfig(**overrides).validate()


class TestLoadConfig:
    """Tests for YAML configuration files."""

    def test_load(self, tmp_path):
        path = tmp_path / "connectome.yaml"
        path.write_text("min_length: 15\ncount_longest_path: true\nscalars: [FA, MD]\n")

        config = load_config(path)
        assert config.min_length == 15
        assert config.count_longest_path is True
        assert config.scalars == ("FA", "MD")

    def test_overrides_win(self, tmp_path):
        path = tmp_path / "connectome.yaml"
        path.write_text("min_length: 15\n")
        assert load_config(path, min_length=30.0).min_length == 30.0

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path) == PipelineConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(MissingInputError, match="config file"):
            load_yaml_config(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("min_length: [15\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_yaml_config(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_yaml_config(path)

    def test_invalid_value_in_file(self, tmp_path):
        path = tmp_path / "connectome.yaml"
        path.write_text("exclusion_threshold: -1\n")
        with pytest.raises(ConfigurationError, match="exclusion_threshold"):
            load_config(path)

"""Tests for treesim.config — configuration loading and validation."""

import tempfile
from pathlib import Path

import pytest
import yaml

from treesim.config import (
    Control,
    MetacommunitySection,
    SimulationConfig,
    SimulationSection,
    deep_merge,
    default_config,
    load_config,
    validate_config,
    validate_control,
)


def _write_yaml(directory, name, data):
    path = Path(directory) / name
    with open(path, 'w') as f:
        yaml.safe_dump(data, f)
    return path


# ── deep_merge tests ──────────────────────────────────────────────────

class TestDeepMerge:
    def test_simple_override(self):
        assert deep_merge({'a': 1, 'b': 2}, {'b': 3}) == {'a': 1, 'b': 3}

    def test_nested_merge(self):
        base = {'x': {'a': 1, 'b': 2}, 'y': 10}
        result = deep_merge(base, {'x': {'b': 3, 'c': 4}})
        assert result == {'x': {'a': 1, 'b': 3, 'c': 4}, 'y': 10}

    def test_override_dict_with_scalar(self):
        assert deep_merge({'a': {'nested': 1}}, {'a': 'replaced'}) == {'a': 'replaced'}

    def test_lists_are_replaced(self):
        base = {'strategies': [{'lma': 0.1}, {'lma': 0.2}]}
        result = deep_merge(base, {'strategies': [{'hmat': 10}]})
        assert result == {'strategies': [{'hmat': 10}]}


# ── default_config tests ─────────────────────────────────────────────

class TestDefaultConfig:
    def test_sections_present(self):
        config = default_config()
        assert isinstance(config.simulation, SimulationSection)
        assert isinstance(config.metacommunity, MetacommunitySection)
        assert isinstance(config.control, Control)

    def test_defaults(self):
        config = default_config()
        assert config.simulation.seed == 42
        assert config.metacommunity.n_patches == 1
        assert config.strategies == [{}]
        assert config.control.plant_spline_height_max is None


# ── validation tests ─────────────────────────────────────────────────

class TestValidateConfig:
    def test_default_is_valid(self):
        validate_config(SimulationConfig())

    @pytest.mark.parametrize("section,name,value", [
        ('simulation', 'seed', -1),
        ('simulation', 't_max', -0.5),
        ('simulation', 'max_steps', 0),
        ('simulation', 'initial_seedlings', -2),
        ('metacommunity', 'n_patches', 0),
        ('metacommunity', 'c_ext', -0.1),
        ('metacommunity', 'patch_area', 0.0),
    ])
    def test_rejects_bad_values(self, section, name, value):
        config = SimulationConfig()
        setattr(getattr(config, section), name, value)
        with pytest.raises(ValueError):
            validate_config(config)

    def test_no_strategies(self):
        config = SimulationConfig(strategies=[])
        with pytest.raises(ValueError, match="strategy"):
            validate_config(config)

    def test_empty_start_warns(self):
        config = SimulationConfig()
        config.simulation.initial_seedlings = 0
        with pytest.warns(UserWarning, match="empty"):
            validate_config(config)


class TestValidateControl:
    def test_default_is_valid(self):
        validate_control(Control())

    def test_both_tolerances_zero(self):
        with pytest.raises(ValueError):
            validate_control(Control(ode_tol_abs=0.0, ode_tol_rel=0.0))

    def test_step_size_ordering(self):
        with pytest.raises(ValueError, match="step sizes"):
            validate_control(Control(ode_step_size_min=1.0, ode_step_size_initial=0.1))

    def test_too_few_spline_points(self):
        with pytest.raises(ValueError):
            validate_control(Control(plant_spline_n_points=3))

    def test_negative_spline_height_max(self):
        with pytest.raises(ValueError):
            validate_control(Control(plant_spline_height_max=-1.0))

    def test_negative_quadrature_rel_tol(self):
        with pytest.raises(ValueError, match="plant_assimilation_tol_rel"):
            validate_control(Control(plant_assimilation_tol_rel=-1e-6))


# ── load_config tests ────────────────────────────────────────────────

class TestLoadConfig:
    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_config('/nonexistent/base.yaml')

    def test_empty_file_gives_defaults(self):
        with tempfile.TemporaryDirectory() as d:
            path = Path(d) / 'base.yaml'
            path.write_text('')
            config = load_config(path)
        assert config.simulation.seed == 42

    def test_sections_and_strategies(self):
        data = {
            'simulation': {'seed': 7, 't_max': 2.5},
            'metacommunity': {'n_patches': 3},
            'control': {'ode_tol_rel': 1e-4},
            'strategies': [{'hmat': 10.0}, {'lma': 0.1}],
        }
        with tempfile.TemporaryDirectory() as d:
            config = load_config(_write_yaml(d, 'base.yaml', data))
        assert config.simulation.seed == 7
        assert config.simulation.t_max == 2.5
        assert config.metacommunity.n_patches == 3
        assert config.control.ode_tol_rel == 1e-4
        assert config.strategies == [{'hmat': 10.0}, {'lma': 0.1}]

    def test_unknown_keys_ignored(self):
        data = {'simulation': {'seed': 3, 'not_a_field': 1}, 'extra_section': {}}
        with tempfile.TemporaryDirectory() as d:
            config = load_config(_write_yaml(d, 'base.yaml', data))
        assert config.simulation.seed == 3
        assert not hasattr(config.simulation, 'not_a_field')

    def test_scenario_then_overrides(self):
        with tempfile.TemporaryDirectory() as d:
            base = _write_yaml(d, 'base.yaml',
                               {'simulation': {'seed': 1, 't_max': 5.0}})
            scenario = _write_yaml(d, 'scenario.yaml',
                                   {'simulation': {'t_max': 20.0},
                                    'metacommunity': {'n_patches': 4}})
            config = load_config(base, scenario,
                                 overrides={'metacommunity': {'n_patches': 2}})
        assert config.simulation.seed == 1
        assert config.simulation.t_max == 20.0
        assert config.metacommunity.n_patches == 2

    def test_missing_scenario_is_skipped(self):
        with tempfile.TemporaryDirectory() as d:
            base = _write_yaml(d, 'base.yaml', {'simulation': {'seed': 9}})
            config = load_config(base, Path(d) / 'missing.yaml')
        assert config.simulation.seed == 9

    def test_strategies_must_be_list(self):
        with tempfile.TemporaryDirectory() as d:
            base = _write_yaml(d, 'base.yaml', {'strategies': {'lma': 0.1}})
            with pytest.raises(ValueError, match="list"):
                load_config(base)

    def test_invalid_values_raise(self):
        with tempfile.TemporaryDirectory() as d:
            base = _write_yaml(d, 'base.yaml', {'metacommunity': {'n_patches': 0}})
            with pytest.raises(ValueError):
                load_config(base)

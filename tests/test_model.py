"""Tests for treesim.model — config-driven runs."""

import logging

import numpy as np
import pytest

from treesim.config import SimulationConfig
from treesim.errors import ParameterValueError, UnknownParameterError
from treesim.logging_config import setup_logging
from treesim.model import (
    build_metacommunity,
    build_parameters,
    run_replicates,
    run_simulation,
)


def _config(**simulation):
    config = SimulationConfig()
    config.simulation.t_max = 0.2
    config.simulation.max_steps = 500
    for name, value in simulation.items():
        setattr(config.simulation, name, value)
    config.metacommunity.n_patches = 2
    config.strategies = [{'hmat': 10.0}, {'lma': 0.15}]
    return config


class TestBuild:
    def test_parameters_from_config(self):
        config = _config()
        params = build_parameters(config)
        assert params.n_species == 2
        assert params.n_patches == 2
        assert params.strategies[0].hmat == 10.0
        assert params.strategies[1].lma == 0.15
        assert params.strategies[1].control is config.control

    def test_unknown_trait(self):
        config = _config()
        config.strategies = [{'not_a_trait': 1.0}]
        with pytest.raises(UnknownParameterError):
            build_parameters(config)

    def test_invalid_trait(self):
        config = _config()
        config.strategies = [{'rho': -5.0}]
        with pytest.raises(ParameterValueError):
            build_parameters(config)

    def test_initial_seedlings(self):
        mc = build_metacommunity(_config(initial_seedlings=3))
        np.testing.assert_array_equal(mc.n_individuals(), [[3, 3], [3, 3]])

    def test_no_initial_seedlings(self):
        mc = build_metacommunity(_config(initial_seedlings=0))
        assert mc.n_individuals().sum() == 0


class TestRunSimulation:
    def test_reaches_t_max(self):
        result = run_simulation(_config())
        assert result.reached_t_max
        assert result.final_age >= 0.2
        assert result.ages[0] == 0.0
        assert np.all(np.diff(result.ages) > 0)

    def test_shapes(self):
        result = run_simulation(_config())
        n = result.n_steps
        assert result.ages.shape == (n + 1,)
        assert result.n_individuals.shape == (n + 1, 2, 2)
        assert result.seed_output.shape == (n, 2)
        assert result.deaths.shape == (n, 2)
        assert result.total_individuals[0] == 4

    def test_population_bookkeeping(self):
        """Each step changes counts by seeds added minus deaths."""
        result = run_simulation(_config())
        totals = result.total_individuals
        change = result.seed_output.sum(axis=1) - result.deaths.sum(axis=1)
        np.testing.assert_array_equal(np.diff(totals), change)

    def test_same_seed_reproducible(self):
        r1 = run_simulation(_config())
        r2 = run_simulation(_config())
        np.testing.assert_array_equal(r1.ages, r2.ages)
        np.testing.assert_array_equal(r1.n_individuals, r2.n_individuals)

    def test_max_steps_cap(self, caplog):
        config = _config(max_steps=3, t_max=100.0)
        with caplog.at_level(logging.WARNING, logger="treesim"):
            result = run_simulation(config)
        assert result.n_steps == 3
        assert not result.reached_t_max
        assert "max_steps" in caplog.text

    def test_progress_callback(self):
        calls = []
        result = run_simulation(_config(), progress_callback=lambda a, t: calls.append(a))
        assert len(calls) == result.n_steps
        assert calls[-1] == result.final_age

    def test_zero_t_max(self):
        result = run_simulation(_config(t_max=0.0))
        assert result.n_steps == 0
        assert result.reached_t_max
        assert result.seed_output.shape == (0, 2)


class TestRunReplicates:
    def test_count(self):
        results = run_replicates(_config(t_max=0.05), n_replicates=3)
        assert len(results) == 3

    def test_invalid_count(self):
        with pytest.raises(ValueError):
            run_replicates(_config(), n_replicates=0)


class TestLogging:
    def test_setup_logging_namespace(self, tmp_path):
        log_file = tmp_path / "run.log"
        logger = setup_logging(logging.DEBUG, str(log_file))
        assert logger.name == "treesim"
        assert len(logger.handlers) == 2
        setup_logging(logging.INFO)
        assert len(logger.handlers) == 1
        logger.handlers.clear()
